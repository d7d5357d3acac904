"""Shared fixtures: an in-memory stand-in for the Supabase REST and Auth APIs."""

import re
import copy
import uuid
from datetime import datetime

import pytest

import supabase_client
import request_auth

EMBED_RE = re.compile(r'(\w+)(?::(\w+))?\(([^()]*)\)')

# (table, embedded name) -> (target table, local key, remote key, many)
EMBEDS = {
    ('report_subscriptions', 'dashboards'): ('dashboards', 'dashboard_id', 'id', False),
    ('report_subscriptions', 'companies'): ('companies', 'company_id', 'id', False),
    ('report_subscriptions', 'subscription_recipients'): ('subscription_recipients', 'id', 'subscription_id', True),
}


def _as_text(value):
    if value is True:
        return 'true'
    if value is False:
        return 'false'
    if value is None:
        return 'null'
    return str(value)


def _comparable(value):
    if isinstance(value, (int, float)):
        return value
    try:
        return datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    except ValueError:
        return str(value)


def _matches(row, column, expression):
    value = row.get(column)
    if expression == 'is.null':
        return value is None
    if expression == 'not.is.null':
        return value is not None

    op, _, operand = expression.partition('.')
    if op == 'eq':
        return _as_text(value) == operand
    if op == 'neq':
        return _as_text(value) != operand
    if op == 'in':
        return _as_text(value) in operand.strip('()').split(',')
    if value is None:
        return False
    left, right = _comparable(value), _comparable(operand)
    if op == 'lt':
        return left < right
    if op == 'lte':
        return left <= right
    if op == 'gt':
        return left > right
    if op == 'gte':
        return left >= right
    raise AssertionError(f'Unsupported filter {column}={expression}')


class FakeSupabase:
    def __init__(self):
        self.tables = {}
        self.tokens = {}
        self.auth_users = []
        self.recovery_links = {}
        self.deleted_auth_ids = []

    # -- seeding -------------------------------------------------------------

    def add(self, table, **row):
        row.setdefault('id', str(uuid.uuid4()))
        self.tables.setdefault(table, []).append(row)
        return row

    def rows(self, table, **filters):
        return [r for r in self.tables.get(table, []) if all(r.get(k) == v for k, v in filters.items())]

    def add_user(self, user_id, email, role=None, company_id=None, token=None, full_name=None):
        user = {'id': user_id, 'email': email}
        self.auth_users.append(user)
        self.add('profiles', id=user_id, email=email, company_id=company_id, full_name=full_name,
                 is_active=True)
        if role:
            self.add('user_roles', user_id=user_id, role=role)
        if token:
            self.tokens[token] = user
        return user

    # -- REST ----------------------------------------------------------------

    def _filtered(self, table, filters):
        return [r for r in self.tables.get(table, [])
                if all(_matches(r, col, expr) for col, expr in (filters or {}).items())]

    def _embed(self, table, row, select):
        for name, _alias_key, _cols in EMBED_RE.findall(select):
            relation = EMBEDS.get((table, name))
            if not relation:
                continue
            target, local_key, remote_key, many = relation
            related = [copy.deepcopy(r) for r in self.tables.get(target, [])
                       if r.get(remote_key) is not None and r.get(remote_key) == row.get(local_key)]
            row[name] = related if many else (related[0] if related else None)
        return row

    def select_rows(self, table, filters=None, select='*', order=None, limit=None):
        rows = [self._embed(table, copy.deepcopy(r), select) for r in self._filtered(table, filters)]
        if order:
            column, _, direction = order.partition('.')
            rows.sort(key=lambda r: _as_text(r.get(column)), reverse=direction == 'desc')
        return rows[:limit] if limit else rows

    def insert_rows(self, table, rows):
        batch = rows if isinstance(rows, list) else [rows]
        stored = []
        for row in batch:
            row = dict(row)
            row.setdefault('id', str(uuid.uuid4()))
            row.setdefault('created_at', datetime.utcnow().isoformat() + '+00:00')
            self.tables.setdefault(table, []).append(row)
            stored.append(copy.deepcopy(row))
        return stored

    def update_rows(self, table, filters, updates):
        assert filters, f'unfiltered update on {table}'
        updated = []
        for row in self._filtered(table, filters):
            row.update(updates)
            updated.append(copy.deepcopy(row))
        return updated

    def delete_rows(self, table, filters):
        assert filters, f'unfiltered delete on {table}'
        doomed = self._filtered(table, filters)
        self.tables[table] = [r for r in self.tables.get(table, []) if r not in doomed]
        return copy.deepcopy(doomed)

    def count_rows(self, table, filters=None):
        return len(self._filtered(table, filters))

    # -- Auth ----------------------------------------------------------------

    def get_auth_user(self, access_token):
        return self.tokens.get(access_token)

    def admin_create_user(self, email, password, user_metadata=None, email_confirm=True):
        if any(u['email'].lower() == email.lower() for u in self.auth_users):
            raise supabase_client.AuthUserExists(email)
        user = {'id': str(uuid.uuid4()), 'email': email, 'password': password,
                'user_metadata': user_metadata or {}}
        self.auth_users.append(user)
        # Mirrors the on-signup trigger that creates the profile row
        self.add('profiles', id=user['id'], email=email, company_id=None, is_active=True)
        return user

    def admin_list_users(self):
        return [dict(u) for u in self.auth_users]

    def admin_update_user(self, user_id, attributes):
        user = next(u for u in self.auth_users if u['id'] == user_id)
        user.update(attributes)
        return dict(user)

    def admin_delete_user(self, user_id):
        self.deleted_auth_ids.append(user_id)
        self.auth_users = [u for u in self.auth_users if u['id'] != user_id]

    def admin_generate_link(self, link_type, email, redirect_to=None):
        if email not in self.recovery_links:
            raise RuntimeError('User not found')
        return {'action_link': self.recovery_links[email], 'redirect_to': redirect_to}


PATCHED = (
    'select_rows', 'insert_rows', 'update_rows', 'delete_rows', 'count_rows', 'get_auth_user',
    'admin_create_user', 'admin_list_users', 'admin_update_user', 'admin_delete_user', 'admin_generate_link',
)


@pytest.fixture
def fake_db(monkeypatch):
    fake = FakeSupabase()
    for name in PATCHED:
        monkeypatch.setattr(supabase_client, name, getattr(fake, name))
    monkeypatch.setattr(request_auth, 'CRON_SECRET', 'cron-secret')
    return fake


@pytest.fixture
def tenants(fake_db):
    """One master admin, company c1 with an admin and a user, company c2 with an admin."""
    fake_db.add('companies', id='c1', name='Acme', primary_color='#112233')
    fake_db.add('companies', id='c2', name='Globex', primary_color=None)
    fake_db.add_user('u-master', 'master@carebi.com.br', role='master_admin', token='master-token')
    fake_db.add_user('u-admin', 'admin@acme.com', role='admin', company_id='c1', token='admin-token',
                     full_name='Ana Admin')
    fake_db.add_user('u-user', 'user@acme.com', role='user', company_id='c1', token='user-token',
                     full_name='Ulisses User')
    fake_db.add_user('u-other', 'admin@globex.com', role='admin', company_id='c2', token='other-token')
    return fake_db


@pytest.fixture
def client(fake_db):
    from app import app
    app.config['TESTING'] = True
    with app.test_client() as test_client:
        yield test_client


def bearer(token):
    return {'Authorization': f'Bearer {token}'}


CRON_HEADERS = {'X-Cron-Secret': 'cron-secret'}

"""
Thin wrappers around the Supabase REST (PostgREST) and Auth (GoTrue) APIs.

Every call uses the service-role key, so row-level security does not apply
here; callers are responsible for checking the requesting user's rights
before touching a row.

Filters use PostgREST syntax, e.g. {'id': 'eq.<uuid>', 'status': 'in.(a,b)'}.
"""

import os
import logging
from typing import Dict, Any, Optional, List

import requests

logger = logging.getLogger(__name__)

# Configuration
SUPABASE_URL = os.environ.get('SUPABASE_URL')
SUPABASE_SERVICE_ROLE_KEY = os.environ.get('SUPABASE_SERVICE_ROLE_KEY')

# Request timeouts
TIMEOUT = (5, 60)  # (connect, read)

AUTH_USERS_PAGE_SIZE = 1000


class AuthUserExists(Exception):
    """Raised when creating an auth user whose email is already registered."""


def supabase_headers() -> Dict[str, str]:
    """Return headers for Supabase API requests."""
    return {
        'apikey': SUPABASE_SERVICE_ROLE_KEY,
        'Authorization': f'Bearer {SUPABASE_SERVICE_ROLE_KEY}',
        'Content-Type': 'application/json'
    }


def _table_url(table: str) -> str:
    return f"{SUPABASE_URL}/rest/v1/{table}"


def select_rows(table: str, filters: Optional[Dict[str, str]] = None, select: str = '*',
                order: Optional[str] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    """Fetch rows matching the given PostgREST filters."""
    params = {'select': select}
    if filters:
        params.update(filters)
    if order:
        params['order'] = order
    if limit:
        params['limit'] = str(limit)

    response = requests.get(_table_url(table), params=params, headers=supabase_headers(), timeout=TIMEOUT)
    response.raise_for_status()
    return response.json()


def select_one(table: str, filters: Dict[str, str], select: str = '*') -> Optional[Dict[str, Any]]:
    """Fetch the first matching row, or None."""
    rows = select_rows(table, filters, select=select, limit=1)
    return rows[0] if rows else None


def insert_rows(table: str, rows) -> List[Dict[str, Any]]:
    """Insert one row (dict) or many (list) and return what was stored."""
    headers = supabase_headers()
    headers['Prefer'] = 'return=representation'

    response = requests.post(_table_url(table), headers=headers, json=rows, timeout=TIMEOUT)
    response.raise_for_status()
    return response.json()


def update_rows(table: str, filters: Dict[str, str], updates: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Patch matching rows and return them."""
    if not filters:
        raise ValueError(f"Refusing unfiltered update on {table}")

    headers = supabase_headers()
    headers['Prefer'] = 'return=representation'

    response = requests.patch(_table_url(table), params=filters, headers=headers,
                              json=updates, timeout=TIMEOUT)
    response.raise_for_status()
    return response.json()


def delete_rows(table: str, filters: Dict[str, str]) -> List[Dict[str, Any]]:
    """Delete matching rows and return them."""
    if not filters:
        raise ValueError(f"Refusing unfiltered delete on {table}")

    headers = supabase_headers()
    headers['Prefer'] = 'return=representation'

    response = requests.delete(_table_url(table), params=filters, headers=headers, timeout=TIMEOUT)
    response.raise_for_status()
    return response.json()


def count_rows(table: str, filters: Optional[Dict[str, str]] = None) -> int:
    """Exact row count for the filters, read from the Content-Range header."""
    params = {'select': 'id'}
    if filters:
        params.update(filters)
    headers = supabase_headers()
    headers['Prefer'] = 'count=exact'
    headers['Range'] = '0-0'

    response = requests.get(_table_url(table), params=params, headers=headers, timeout=TIMEOUT)
    response.raise_for_status()

    content_range = response.headers.get('Content-Range', '')
    total = content_range.split('/')[-1] if '/' in content_range else ''
    return int(total) if total.isdigit() else len(response.json())


def get_profile(user_id: str, select: str = '*') -> Optional[Dict[str, Any]]:
    return select_one('profiles', {'id': f'eq.{user_id}'}, select=select)


def get_user_roles(user_id: str) -> List[str]:
    rows = select_rows('user_roles', {'user_id': f'eq.{user_id}'}, select='role')
    return [row['role'] for row in rows]


# ============================================================================
# AUTH (GoTrue)
# ============================================================================

def get_auth_user(access_token: str) -> Optional[Dict[str, Any]]:
    """Resolve a user access token to its auth user, or None when invalid."""
    try:
        response = requests.get(
            f"{SUPABASE_URL}/auth/v1/user",
            headers={'apikey': SUPABASE_SERVICE_ROLE_KEY, 'Authorization': f'Bearer {access_token}'},
            timeout=TIMEOUT
        )
        if response.status_code != 200:
            logger.info(f"Rejected access token {access_token[:8]}... (HTTP {response.status_code})")
            return None
        return response.json()

    except Exception as e:
        logger.error(f"Failed to resolve auth user: {str(e)}")
        return None


def admin_create_user(email: str, password: str, user_metadata: Optional[Dict[str, Any]] = None,
                      email_confirm: bool = True) -> Dict[str, Any]:
    """Create a confirmed auth user. Raises requests.HTTPError on conflict."""
    payload = {'email': email, 'password': password, 'email_confirm': email_confirm}
    if user_metadata:
        payload['user_metadata'] = user_metadata

    response = requests.post(f"{SUPABASE_URL}/auth/v1/admin/users", headers=supabase_headers(),
                             json=payload, timeout=TIMEOUT)
    if response.status_code == 422 and 'already' in response.text:
        raise AuthUserExists(email)
    response.raise_for_status()
    return response.json()


def admin_list_users() -> List[Dict[str, Any]]:
    """Every auth user, walking all pages."""
    users = []
    page = 1
    while True:
        response = requests.get(
            f"{SUPABASE_URL}/auth/v1/admin/users",
            params={'page': page, 'per_page': AUTH_USERS_PAGE_SIZE},
            headers=supabase_headers(),
            timeout=TIMEOUT
        )
        response.raise_for_status()
        batch = response.json().get('users', [])
        users.extend(batch)
        if len(batch) < AUTH_USERS_PAGE_SIZE:
            return users
        page += 1


def admin_find_user_by_email(email: str) -> Optional[Dict[str, Any]]:
    wanted = email.strip().lower()
    for user in admin_list_users():
        if (user.get('email') or '').lower() == wanted:
            return user
    return None


def admin_update_user(user_id: str, attributes: Dict[str, Any]) -> Dict[str, Any]:
    response = requests.put(f"{SUPABASE_URL}/auth/v1/admin/users/{user_id}", headers=supabase_headers(),
                            json=attributes, timeout=TIMEOUT)
    response.raise_for_status()
    return response.json()


def admin_delete_user(user_id: str) -> None:
    response = requests.delete(f"{SUPABASE_URL}/auth/v1/admin/users/{user_id}", headers=supabase_headers(),
                               timeout=TIMEOUT)
    response.raise_for_status()


def admin_generate_link(link_type: str, email: str, redirect_to: Optional[str] = None) -> Dict[str, Any]:
    """Generate an auth action link (e.g. 'recovery') without sending GoTrue's own email."""
    payload = {'type': link_type, 'email': email}
    if redirect_to:
        payload['redirect_to'] = redirect_to

    response = requests.post(f"{SUPABASE_URL}/auth/v1/admin/generate_link", headers=supabase_headers(),
                             json=payload, timeout=TIMEOUT)
    response.raise_for_status()
    return response.json()

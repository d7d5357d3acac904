"""
Caller identity for API routes.

Browser requests carry the user's Supabase access token as a bearer token;
roles come from user_roles and tenancy from profiles.company_id. Scheduled
jobs authenticate with the shared X-Cron-Secret header instead.
"""

import os
import hmac
import logging
from functools import wraps
from typing import Dict, Any, Optional

from flask import request, jsonify, g

import supabase_client as db

logger = logging.getLogger(__name__)

# Configuration
CRON_SECRET = os.environ.get('CRON_SECRET')

MASTER_ADMIN = 'master_admin'
ADMIN = 'admin'
USER = 'user'
ROLES = (MASTER_ADMIN, ADMIN, USER)


def bearer_token() -> Optional[str]:
    header = request.headers.get('Authorization', '')
    if not header.lower().startswith('bearer '):
        return None
    token = header[7:].strip()
    return token or None


def get_request_user() -> Optional[Dict[str, Any]]:
    token = bearer_token()
    if not token:
        return None
    return db.get_auth_user(token)


def get_caller_context(user: Dict[str, Any]) -> Dict[str, Any]:
    roles = db.get_user_roles(user['id'])
    profile = db.get_profile(user['id'], select='id,company_id,full_name,email') or {}
    return {
        'user': user,
        'user_id': user['id'],
        'email': user.get('email') or profile.get('email'),
        'roles': roles,
        'is_master_admin': MASTER_ADMIN in roles,
        'is_admin': ADMIN in roles or MASTER_ADMIN in roles,
        'company_id': profile.get('company_id'),
        'profile': profile,
    }


def cron_secret_valid() -> bool:
    supplied = request.headers.get('X-Cron-Secret')
    return bool(CRON_SECRET and supplied and hmac.compare_digest(supplied, CRON_SECRET))


def _role_gate(check, denied_message):
    def decorator(view):
        @wraps(view)
        def wrapper(*args, **kwargs):
            if request.method == 'OPTIONS':
                return jsonify({'message': 'OK'})

            user = get_request_user()
            if not user:
                return jsonify({'error': 'Não autenticado'}), 401

            try:
                caller = get_caller_context(user)
            except Exception as e:
                logger.error(f"Failed to load caller context for {user.get('id')}: {str(e)}")
                return jsonify({'error': 'Failed to load user'}), 500

            if not check(caller):
                logger.warning(f"[AUDIT] Access denied for user {caller['user_id']} on {request.path}")
                return jsonify({'error': denied_message}), 403

            g.caller = caller
            return view(*args, **kwargs)
        return wrapper
    return decorator


require_user = _role_gate(lambda caller: True, 'Acesso negado')
require_admin = _role_gate(lambda caller: caller['is_admin'], 'Apenas administradores podem realizar esta ação')
require_master_admin = _role_gate(lambda caller: caller['is_master_admin'],
                                  'Apenas master admins podem realizar esta ação')


def require_cron_secret(view):
    @wraps(view)
    def wrapper(*args, **kwargs):
        if request.method == 'OPTIONS':
            return jsonify({'message': 'OK'})

        if not CRON_SECRET:
            logger.error("CRON_SECRET not configured")
            return jsonify({'error': 'CRON_SECRET not configured'}), 500

        if not cron_secret_valid():
            logger.warning(f"Invalid or missing cron secret on {request.path}")
            return jsonify({'error': 'Unauthorized'}), 403

        return view(*args, **kwargs)
    return wrapper


def can_manage_company(caller: Dict[str, Any], company_id: Optional[str]) -> bool:
    """Master admins manage every company; admins only their own."""
    if caller['is_master_admin']:
        return True
    return caller['is_admin'] and company_id is not None and caller['company_id'] == company_id


def can_view_dashboard(user_id: str, dashboard: Dict[str, Any]) -> bool:
    """Owner, a direct grant, or a grant through one of the user's groups."""
    if dashboard.get('owner_id') == user_id:
        return True

    dashboard_id = dashboard['id']
    direct = db.select_one('user_dashboard_access',
                           {'user_id': f'eq.{user_id}', 'dashboard_id': f'eq.{dashboard_id}'},
                           select='id')
    if direct:
        return True

    memberships = db.select_rows('user_group_members', {'user_id': f'eq.{user_id}'}, select='group_id')
    group_ids = [m['group_id'] for m in memberships]
    if not group_ids:
        return False

    grant = db.select_one('group_dashboard_access',
                          {'group_id': f"in.({','.join(group_ids)})", 'dashboard_id': f'eq.{dashboard_id}'},
                          select='id')
    return grant is not None

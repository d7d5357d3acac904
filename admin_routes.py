# Administration API Routes
# Power BI credentials, user lifecycle, company removal and transactional email

import logging
import secrets
import string
from html import escape
from typing import Dict, Any, List, Optional

from flask import Blueprint, request, jsonify, g

import mailer
import plan_limits
import supabase_client as db
from credential_vault import encrypt_value, decrypt_value, EncryptionNotConfigured
from request_auth import (require_user, require_admin, require_master_admin, can_manage_company,
                          can_view_dashboard, MASTER_ADMIN, USER, ROLES)

logger = logging.getLogger(__name__)

admin_bp = Blueprint('admin', __name__)

PASSWORD_LENGTH = 12
PASSWORD_SPECIALS = '@#$%&*!'

CREDENTIAL_PUBLIC_FIELDS = 'id,name,client_id,tenant_id,username,company_id,created_at'

# Rows keyed by user_id removed when a user leaves a company
USER_TABLES = (
    'user_dashboard_access',
    'user_group_members',
    'user_dashboard_refresh_permissions',
    'access_log_permissions',
)
USER_ACCOUNT_TABLES = ('onboarding_progress', 'subscriptions')
USER_CONTENT_TABLES = (
    'user_dashboard_favorites',
    'user_dashboard_bookmarks',
    'support_messages',
    'privacy_consent_records',
)
DASHBOARD_TABLES = (
    'dashboard_page_visibility',
    'dashboard_refresh_history',
    'slider_slides',
    'group_dashboard_access',
)
COMPANY_TABLES = (
    'power_bi_configs',
    'credential_company_access',
    'dashboard_access_logs',
    'user_invitations',
)


def generate_password(length: int = PASSWORD_LENGTH) -> str:
    """Random password with at least one upper, lower, digit and special character."""
    pools = [string.ascii_uppercase, string.ascii_lowercase, string.digits, PASSWORD_SPECIALS]
    chars = [secrets.choice(pool) for pool in pools]
    everything = ''.join(pools)
    chars += [secrets.choice(everything) for _ in range(length - len(chars))]
    secrets.SystemRandom().shuffle(chars)
    return ''.join(chars)


def _delete_user_rows(user_id: str, tables) -> None:
    for table in tables:
        db.delete_rows(table, {'user_id': f'eq.{user_id}'})


def _delete_auth_user(user_id: str) -> bool:
    try:
        db.admin_delete_user(user_id)
        return True
    except Exception as e:
        logger.error(f"Failed to delete auth user {user_id}: {str(e)}")
        return False


# ============================================================================
# POWER BI CREDENTIALS
# ============================================================================

def create_credential(caller: Dict[str, Any], data: Dict[str, Any]):
    for field in ('name', 'client_id', 'client_secret', 'tenant_id'):
        if not data.get(field):
            return jsonify({'success': False, 'error': f'{field} is required'}), 400

    limit = plan_limits.enforce_limit(caller, 'credentials')
    if limit:
        return jsonify({
            'success': False,
            'error': 'Limite de credenciais do plano atingido',
            'limit': limit,
        }), 403

    company_id = data.get('company_id')
    if not caller['is_master_admin'] and not company_id:
        company_id = caller['company_id']
    if company_id and not can_manage_company(caller, company_id):
        return jsonify({'success': False, 'error': 'Access denied'}), 403

    row = {
        'user_id': caller['user_id'],
        'name': data['name'],
        'client_id': data['client_id'],
        'client_secret': encrypt_value(data['client_secret']),
        'tenant_id': data['tenant_id'],
        'username': data.get('username'),
        'password': encrypt_value(data['password']) if data.get('password') else None,
        'company_id': company_id or None,
    }
    stored = db.insert_rows('power_bi_configs', row)[0]
    logger.info(f"Credential created: {stored['id']}")

    public = {key: stored.get(key) for key in CREDENTIAL_PUBLIC_FIELDS.split(',')}
    return jsonify({'success': True, 'data': public})


def update_credential(caller: Dict[str, Any], data: Dict[str, Any]):
    credential_id = data.get('id')
    existing = db.select_one('power_bi_configs', {'id': f'eq.{credential_id}'}, select='id,user_id') \
        if credential_id else None
    if not existing or (not caller['is_master_admin'] and existing['user_id'] != caller['user_id']):
        return jsonify({'success': False, 'error': 'Credential not found or access denied'}), 400

    updates = {field: data[field] for field in ('name', 'client_id', 'tenant_id', 'username') if field in data}
    if caller['is_master_admin'] and 'company_id' in data:
        updates['company_id'] = data['company_id'] or None
    if data.get('client_secret'):
        updates['client_secret'] = encrypt_value(data['client_secret'])
    if data.get('password'):
        updates['password'] = encrypt_value(data['password'])

    db.update_rows('power_bi_configs', {'id': f'eq.{credential_id}'}, updates)
    logger.info(f"Credential updated: {credential_id}")
    return jsonify({'success': True})


def decrypt_credential_for_use(caller: Dict[str, Any], data: Dict[str, Any]):
    credential_id = data.get('credentialId')
    dashboard_id = data.get('dashboardId')
    if not credential_id or not dashboard_id:
        return jsonify({'success': False, 'error': 'credentialId and dashboardId are required'}), 400

    dashboard = db.select_one('dashboards', {'id': f'eq.{dashboard_id}'}, select='id,owner_id,credential_id')
    if not dashboard:
        return jsonify({'success': False, 'error': 'Dashboard not found'}), 400
    if not caller['is_master_admin'] and not can_view_dashboard(caller['user_id'], dashboard):
        return jsonify({'success': False, 'error': 'Access denied'}), 400
    if dashboard.get('credential_id') != credential_id:
        return jsonify({'success': False, 'error': 'Credential mismatch'}), 400

    row = db.select_one('power_bi_configs', {'id': f'eq.{credential_id}'},
                        select='client_id,client_secret,tenant_id,username,password')
    if not row:
        return jsonify({'success': False, 'error': 'Credential not found'}), 400

    return jsonify({
        'success': True,
        'credential': {
            'client_id': row.get('client_id'),
            'client_secret': decrypt_value(row.get('client_secret')),
            'tenant_id': row.get('tenant_id'),
            'username': row.get('username'),
            'password': decrypt_value(row.get('password')),
        }
    })


CREDENTIAL_ACTIONS = {
    'create': create_credential,
    'update': update_credential,
    'decrypt_for_use': decrypt_credential_for_use,
}


@admin_bp.route('/api/credentials', methods=['POST', 'OPTIONS'])
@require_user
def manage_credentials():
    try:
        body = request.get_json(silent=True) or {}
        handler = CREDENTIAL_ACTIONS.get(body.get('action'))
        if not handler:
            return jsonify({'success': False, 'error': 'Invalid action'}), 400

        if body['action'] != 'decrypt_for_use' and not g.caller['is_admin']:
            return jsonify({'success': False, 'error': 'Apenas administradores podem gerenciar credenciais'}), 403

        return handler(g.caller, body.get('data') or {})

    except EncryptionNotConfigured as e:
        logger.error(f"Credential action failed: {str(e)}")
        return jsonify({'success': False, 'error': str(e)}), 500
    except Exception as e:
        logger.error(f"Error in manage credentials: {str(e)}")
        return jsonify({'success': False, 'error': str(e)}), 400


# ============================================================================
# USERS
# ============================================================================

def _find_or_create_auth_user(email: str, password: str, invited_by: str):
    """Returns (user_id, is_existing_user)."""
    metadata = {'invited_by': invited_by}
    try:
        created = db.admin_create_user(email, password, user_metadata=metadata)
        return created['id'], False
    except db.AuthUserExists:
        pass

    existing = db.admin_find_user_by_email(email)
    if not existing:
        raise RuntimeError(f'Auth user {email} reported as existing but not found')

    if db.get_profile(existing['id'], select='id'):
        return existing['id'], True

    # Auth user without a profile is a leftover of a failed signup
    logger.info(f"Recreating orphaned auth user {existing['id']} for {email}")
    db.admin_delete_user(existing['id'])
    created = db.admin_create_user(email, password, user_metadata=metadata)
    return created['id'], False


@admin_bp.route('/api/users/invite', methods=['POST', 'OPTIONS'])
@require_admin
def invite_user():
    try:
        caller = g.caller
        body = request.get_json(silent=True) or {}
        email = (body.get('email') or '').strip().lower()
        company_id = body.get('companyId')
        dashboard_ids = body.get('dashboardIds') or []
        role = body.get('invitedRole') or USER

        if not email or not company_id:
            return jsonify({'error': 'Email e empresa são obrigatórios'}), 400
        if role not in ROLES:
            return jsonify({'error': f'Papel inválido: {role}'}), 400
        if role == MASTER_ADMIN and not caller['is_master_admin']:
            return jsonify({'error': 'Apenas master admins podem conceder este papel'}), 403
        if not can_manage_company(caller, company_id):
            return jsonify({'error': 'Você não pode convidar usuários para esta empresa'}), 403

        limit = plan_limits.enforce_limit(caller, 'users')
        if limit:
            return jsonify({'error': 'Limite de usuários do plano atingido', 'limit': limit}), 403

        password = generate_password()
        user_id, is_existing = _find_or_create_auth_user(email, password, caller['user_id'])

        profile_updates = {'company_id': company_id, 'must_change_password': True}
        if not db.update_rows('profiles', {'id': f'eq.{user_id}'}, profile_updates):
            db.insert_rows('profiles', {'id': user_id, 'email': email, **profile_updates})

        db.delete_rows('user_roles', {'user_id': f'eq.{user_id}'})
        db.insert_rows('user_roles', {'user_id': user_id, 'role': role})

        if dashboard_ids:
            db.insert_rows('user_dashboard_access', [
                {'user_id': user_id, 'dashboard_id': dashboard_id, 'granted_by': caller['user_id']}
                for dashboard_id in dashboard_ids
            ])

        logger.info(f"[AUDIT] {caller['user_id']} invited {email} to company {company_id} as {role}")
        return jsonify({
            'success': True,
            'userId': user_id,
            'temporaryPassword': None if is_existing else password,
            'isExistingUser': is_existing,
            'message': ('Usuário existente adicionado à empresa com sucesso' if is_existing
                        else 'Novo usuário criado com sucesso'),
        })

    except Exception as e:
        logger.error(f"Error inviting user: {str(e)}")
        return jsonify({'error': str(e)}), 500


@admin_bp.route('/api/users/delete', methods=['POST', 'OPTIONS'])
@require_admin
def delete_user():
    try:
        caller = g.caller
        body = request.get_json(silent=True) or {}
        user_id = body.get('userId')
        delete_from_auth = bool(body.get('deleteFromAuth'))

        if not user_id:
            return jsonify({'error': 'userId é obrigatório'}), 400
        if user_id == caller['user_id']:
            return jsonify({'error': 'Você não pode excluir sua própria conta'}), 400

        target = db.get_profile(user_id, select='id,company_id')
        if not caller['is_master_admin'] and (not target or target.get('company_id') != caller['company_id']):
            return jsonify({'error': 'Você só pode excluir usuários da sua empresa'}), 403

        _delete_user_rows(user_id, USER_TABLES + USER_ACCOUNT_TABLES + ('user_roles',))
        db.delete_rows('profiles', {'id': f'eq.{user_id}'})

        if delete_from_auth:
            _delete_auth_user(user_id)

        logger.info(f"[AUDIT] {caller['user_id']} deleted user {user_id} (auth={delete_from_auth})")
        return jsonify({
            'success': True,
            'message': 'Usuário excluído completamente' if delete_from_auth else 'Usuário removido da empresa',
        })

    except Exception as e:
        logger.error(f"Error deleting user: {str(e)}")
        return jsonify({'error': str(e)}), 500


@admin_bp.route('/api/users/reset-password', methods=['POST', 'OPTIONS'])
@require_admin
def reset_user_password():
    try:
        caller = g.caller
        body = request.get_json(silent=True) or {}
        target_id = body.get('targetUserId')
        if not target_id:
            return jsonify({'error': 'targetUserId é obrigatório'}), 400

        target = db.get_profile(target_id, select='id,email,full_name,company_id')
        if not target:
            return jsonify({'error': 'Usuário não encontrado'}), 404
        if not caller['is_master_admin'] and target.get('company_id') != caller['company_id']:
            return jsonify({'error': 'Você só pode redefinir senhas de usuários da sua empresa'}), 403

        password = generate_password()
        db.admin_update_user(target_id, {'password': password})
        db.update_rows('profiles', {'id': f'eq.{target_id}'}, {'must_change_password': True})

        name = target.get('full_name') or target['email']
        content = f"""
            <p>Olá {escape(name)},</p>
            <p>Uma nova senha foi gerada para sua conta Care BI pelo administrador.</p>
            <p style="font-size: 18px; font-family: monospace; background-color: #f1f5f9; padding: 12px; border-radius: 6px;">{escape(password)}</p>
            <p><strong>Importante:</strong> Você será solicitado a alterar esta senha no próximo login.</p>"""
        mailer.send_email(target['email'], 'Nova Senha - Care BI',
                          mailer.render_layout(content, mailer.APP_URL, 'Acessar Care BI'),
                          to_name=target.get('full_name'))

        logger.info(f"[AUDIT] {caller['user_id']} reset the password of {target_id}")
        return jsonify({'success': True, 'message': 'Nova senha enviada por email'})

    except Exception as e:
        logger.error(f"Error resetting password: {str(e)}")
        return jsonify({'error': str(e)}), 500


@admin_bp.route('/api/auth/password-reset', methods=['POST', 'OPTIONS'])
def send_password_reset():
    if request.method == 'OPTIONS':
        return jsonify({'message': 'OK'})

    generic = {'success': True, 'message': 'Se o e-mail existir, você receberá um link de recuperação.'}
    try:
        body = request.get_json(silent=True) or {}
        email = (body.get('email') or '').strip()
        if not email:
            return jsonify({'error': 'E-mail é obrigatório'}), 400

        try:
            link = db.admin_generate_link('recovery', email, body.get('redirectUrl'))
        except Exception as e:
            logger.info(f"No recovery link generated for {email}: {str(e)}")
            return jsonify(generic)

        action_link = link.get('action_link') or (link.get('properties') or {}).get('action_link')
        if not action_link:
            logger.error(f"Recovery link missing in response for {email}")
            return jsonify({'error': 'Erro ao gerar link de recuperação'}), 500

        content = """
            <p>Recebemos uma solicitação para redefinir a senha da sua conta Care BI.</p>
            <p>Clique no botão abaixo para criar uma nova senha:</p>
            <p><strong>Importante:</strong> Este link expira em 24 horas. Se você não solicitou a redefinição de senha, ignore este e-mail.</p>"""
        mailer.send_email(email, 'Recuperação de Senha - Care BI',
                          mailer.render_layout(content, action_link, 'Redefinir Senha'),
                          text='Clique no link para redefinir sua senha')

        return jsonify(generic)

    except Exception as e:
        logger.error(f"Error sending password reset: {str(e)}")
        return jsonify({'error': str(e)}), 500


# ============================================================================
# COMPANIES AND ORPHANED ACCOUNTS
# ============================================================================

def _delete_company_cascade(company_id: str, delete_users: bool) -> Dict[str, int]:
    profiles = db.select_rows('profiles', {'company_id': f'eq.{company_id}'}, select='id')
    for profile in profiles:
        user_id = profile['id']
        _delete_user_rows(user_id, USER_TABLES + USER_CONTENT_TABLES + ('user_roles',))
        db.delete_rows('profiles', {'id': f'eq.{user_id}'})
        if delete_users:
            _delete_auth_user(user_id)

    dashboards = db.select_rows('dashboards', {'company_id': f'eq.{company_id}'}, select='id')
    for dashboard in dashboards:
        for table in DASHBOARD_TABLES:
            db.delete_rows(table, {'dashboard_id': f"eq.{dashboard['id']}"})
    if dashboards:
        db.delete_rows('dashboards', {'company_id': f'eq.{company_id}'})

    groups = db.select_rows('user_groups', {'company_id': f'eq.{company_id}'}, select='id')
    for group in groups:
        db.delete_rows('user_group_members', {'group_id': f"eq.{group['id']}"})
        db.delete_rows('group_dashboard_access', {'group_id': f"eq.{group['id']}"})
    if groups:
        db.delete_rows('user_groups', {'company_id': f'eq.{company_id}'})

    subscriptions = db.select_rows('report_subscriptions', {'company_id': f'eq.{company_id}'}, select='id')
    for subscription in subscriptions:
        db.delete_rows('subscription_recipients', {'subscription_id': f"eq.{subscription['id']}"})
        db.delete_rows('subscription_logs', {'subscription_id': f"eq.{subscription['id']}"})
    if subscriptions:
        db.delete_rows('report_subscriptions', {'company_id': f'eq.{company_id}'})

    for table in COMPANY_TABLES:
        db.delete_rows(table, {'company_id': f'eq.{company_id}'})
    db.delete_rows('companies', {'id': f'eq.{company_id}'})

    return {'deletedUsers': len(profiles), 'deletedDashboards': len(dashboards)}


@admin_bp.route('/api/companies/delete', methods=['POST', 'OPTIONS'])
@require_master_admin
def delete_company():
    try:
        body = request.get_json(silent=True) or {}
        company_id = body.get('companyId')
        if not company_id:
            return jsonify({'error': 'companyId é obrigatório'}), 400

        company = db.select_one('companies', {'id': f'eq.{company_id}'}, select='id,name')
        if not company:
            return jsonify({'error': 'Empresa não encontrada'}), 404

        counts = _delete_company_cascade(company_id, bool(body.get('deleteUsers')))
        logger.info(f"[AUDIT] {g.caller['user_id']} deleted company {company_id} ({company.get('name')}): {counts}")
        return jsonify({'success': True, 'message': 'Empresa excluída com sucesso', **counts})

    except Exception as e:
        logger.error(f"Error deleting company: {str(e)}")
        return jsonify({'error': str(e)}), 500


def _purge_user(user: Dict[str, Any]) -> None:
    user_id = user['id']
    _delete_user_rows(user_id, USER_TABLES + USER_CONTENT_TABLES + USER_ACCOUNT_TABLES + ('user_roles',))
    db.delete_rows('profiles', {'id': f'eq.{user_id}'})
    if user.get('email'):
        db.delete_rows('user_invitations', {'email': f"eq.{user['email']}"})
    db.admin_delete_user(user_id)


@admin_bp.route('/api/users/cleanup-orphans', methods=['POST', 'OPTIONS'])
@require_master_admin
def cleanup_orphan_users():
    try:
        body = request.get_json(silent=True) or {}
        emails = [e.strip().lower() for e in body.get('emails') or [] if e and e.strip()]
        delete_all = bool(body.get('deleteAll'))
        if not emails and not delete_all:
            return jsonify({'error': 'Informe emails ou deleteAll'}), 400

        auth_users = db.admin_list_users()
        total_profiles = db.count_rows('profiles')

        if delete_all:
            # Bulk profile reads stop at the REST max-rows cap
            targets = [u for u in auth_users if not db.get_profile(u['id'], select='id')]
        else:
            wanted = set(emails)
            targets = [u for u in auth_users if (u.get('email') or '').lower() in wanted]

        deleted: List[str] = []
        errors: List[Dict[str, Optional[str]]] = []
        for user in targets:
            try:
                _purge_user(user)
                deleted.append(user.get('email'))
            except Exception as e:
                logger.error(f"Failed to delete orphan {user.get('email')}: {str(e)}")
                errors.append({'email': user.get('email'), 'error': str(e)})

        logger.info(f"[AUDIT] {g.caller['user_id']} removed {len(deleted)} orphaned users")
        return jsonify({
            'success': True,
            'message': f'{len(deleted)} usuário(s) excluído(s)',
            'deletedUsers': deleted,
            'errors': errors,
            'totalAuthUsers': len(auth_users),
            'totalProfiles': total_profiles,
        })

    except Exception as e:
        logger.error(f"Error cleaning up orphan users: {str(e)}")
        return jsonify({'error': str(e)}), 500


# ============================================================================
# TRANSACTIONAL EMAIL
# ============================================================================

@admin_bp.route('/api/email/send', methods=['POST', 'OPTIONS'])
@require_admin
def send_transactional_email():
    try:
        body = request.get_json(silent=True) or {}
        to = body.get('to')
        subject = body.get('subject')
        html_content = body.get('htmlContent')
        if not to or not subject or not html_content:
            return jsonify({'error': 'to, subject e htmlContent são obrigatórios'}), 400

        mailer.send_email(to, subject, mailer.render_layout(html_content), text=body.get('textContent'),
                          to_name=body.get('toName'))
        return jsonify({'success': True})

    except Exception as e:
        logger.error(f"Error sending email: {str(e)}")
        return jsonify({'error': str(e)}), 500

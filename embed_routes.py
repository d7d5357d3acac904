# Embedded Power BI API Routes
# Embed tokens, dataset refreshes, refresh-history sync, dataset chat and access logs

import json
import logging
from datetime import timedelta
from typing import Dict, Any, List

from flask import Blueprint, request, jsonify, g

import ai_gateway
import powerbi
import supabase_client as db
from credential_vault import load_powerbi_credential
from powerbi import PowerBIError, USER_ERROR_MESSAGES, REFRESH_ERROR_MESSAGES
from report_schedule import utc_now, parse_timestamp
from request_auth import require_user, require_cron_secret, can_view_dashboard

logger = logging.getLogger(__name__)

embed_bp = Blueprint('embed', __name__)

REFRESH_HISTORY_WINDOW = timedelta(hours=72)
CHAT_MAX_ROWS = 100

REFRESH_STATUS_MAP = {
    'Completed': 'completed',
    'Failed': 'failed',
    'Cancelled': 'failed',
}

DAX_SYSTEM_PROMPT = """Você é um especialista em DAX (Data Analysis Expressions) para Power BI.
Sua tarefa é converter perguntas em português para queries DAX válidas.

REGRAS IMPORTANTES:
1. Sempre use EVALUATE no início da query
2. Use TOPN para limitar resultados (máximo 100 linhas)
3. Use SUMMARIZECOLUMNS para agregações
4. Retorne APENAS a query DAX, sem explicações
5. Se não conseguir gerar uma query válida, retorne: EVALUATE ROW("Erro", "Não foi possível interpretar a pergunta")

Exemplos:
- "Top 10 empresas por vendas" -> EVALUATE TOPN(10, SUMMARIZECOLUMNS('Empresa'[Nome], "Total", SUM('Vendas'[Valor])), [Total], DESC)
- "Total de vendas" -> EVALUATE ROW("Total Vendas", SUM('Vendas'[Valor]))"""

ANSWER_SYSTEM_PROMPT = """Você é um assistente de análise de dados amigável.
Sua tarefa é interpretar resultados de queries e responder de forma clara e concisa em português.

REGRAS:
1. Seja direto e objetivo
2. Formate números de forma legível (ex: R$ 1.234,56)
3. Se houver uma lista, apresente de forma organizada
4. Se não houver dados, informe educadamente
5. Não mencione termos técnicos como "DAX" ou "query\""""


def credential_for_dashboard(dashboard: Dict[str, Any]) -> powerbi.PowerBICredential:
    """Load the dashboard's Power BI credential or raise credentials_missing."""
    if not dashboard.get('credential_id'):
        raise PowerBIError('credentials_missing', 'Dashboard has no credential')

    credential = load_powerbi_credential(dashboard['credential_id'])
    if not credential:
        raise PowerBIError('credentials_missing', f"Credential {dashboard['credential_id']} not found")
    if not credential.is_complete():
        raise PowerBIError('credentials_missing', 'Credential is missing fields')
    return credential


def resolve_dataset_id(access_token: str, dashboard: Dict[str, Any]) -> str:
    """Stored dataset_id, or look it up from the report and cache it on the dashboard."""
    if dashboard.get('dataset_id'):
        return dashboard['dataset_id']

    dataset_id = powerbi.get_dataset_id(access_token, dashboard['workspace_id'], dashboard['dashboard_id'])
    db.update_rows('dashboards', {'id': f"eq.{dashboard['id']}"}, {'dataset_id': dataset_id})
    dashboard['dataset_id'] = dataset_id
    return dataset_id


def _user_error(error: Exception, messages=None) -> str:
    if isinstance(error, PowerBIError):
        return error.user_message(messages)
    return PowerBIError(powerbi.categorize_error(str(error))).user_message(messages)


# ============================================================================
# EMBED TOKEN
# ============================================================================

@embed_bp.route('/api/powerbi/embed', methods=['POST', 'OPTIONS'])
@require_user
def get_embed_token():
    """Mint a view-only embed token for a dashboard the caller may see."""
    caller = g.caller
    data = request.get_json(silent=True) or {}
    dashboard_id = data.get('dashboardId')

    if not dashboard_id:
        return jsonify({'success': False, 'error': 'Dashboard ID is required'}), 400

    logger.info(f"[AUDIT] Embed request for dashboard {dashboard_id} by user {caller['user_id']}")

    try:
        dashboard = db.select_one(
            'dashboards',
            {'id': f'eq.{dashboard_id}'},
            select='id,workspace_id,dashboard_id,report_section,credential_id,owner_id'
        )
        if not dashboard:
            raise PowerBIError('resource_not_found', f'Dashboard {dashboard_id} not found')

        if not caller['is_master_admin'] and not can_view_dashboard(caller['user_id'], dashboard):
            raise PowerBIError('permission_denied', f"User {caller['user_id']} cannot view {dashboard_id}")

        credential = credential_for_dashboard(dashboard)
        access_token = powerbi.get_access_token(credential)
        embed = powerbi.generate_embed_token(access_token, dashboard['workspace_id'], dashboard['dashboard_id'])

        logger.info(f"Embed token generated for dashboard {dashboard_id}")
        return jsonify({
            'success': True,
            'embedUrl': embed.embed_url,
            'embedToken': embed.embed_token,
            'expiration': embed.expiration,
            'reportSection': dashboard.get('report_section'),
        })

    except Exception as e:
        logger.error(f"[AUDIT] Embed error for dashboard {dashboard_id}: {str(e)}")
        return jsonify({'success': False, 'error': _user_error(e)}), 400


# ============================================================================
# DATASET REFRESH
# ============================================================================

@embed_bp.route('/api/powerbi/refresh', methods=['POST', 'OPTIONS'])
@require_user
def refresh_dataset():
    """Trigger a dataset refresh for a dashboard the caller may refresh."""
    caller = g.caller
    data = request.get_json(silent=True) or {}
    dashboard_id = data.get('dashboardId')

    if not dashboard_id:
        return jsonify({'success': False, 'error': 'Dashboard ID is required'}), 400

    logger.info(f"[AUDIT] Refresh request for dashboard {dashboard_id} by user {caller['user_id']}")
    history_id = None

    try:
        permission = db.select_one(
            'user_dashboard_refresh_permissions',
            {'dashboard_id': f'eq.{dashboard_id}', 'user_id': f"eq.{caller['user_id']}"},
            select='id'
        )
        if not permission:
            raise PowerBIError('permission_denied', 'No refresh permission')

        try:
            history = db.insert_rows('dashboard_refresh_history', {
                'dashboard_id': dashboard_id,
                'user_id': caller['user_id'],
                'status': 'pending',
            })
            history_id = history[0]['id'] if history else None
        except Exception as e:
            logger.warning(f"Failed to create refresh history entry: {str(e)}")

        dashboard = db.select_one(
            'dashboards',
            {'id': f'eq.{dashboard_id}'},
            select='id,workspace_id,dashboard_id,credential_id,dataset_id'
        )
        if not dashboard:
            raise PowerBIError('resource_not_found', f'Dashboard {dashboard_id} not found')

        credential = credential_for_dashboard(dashboard)
        access_token = powerbi.get_access_token(credential)
        dataset_id = resolve_dataset_id(access_token, dashboard)
        powerbi.trigger_refresh(access_token, dashboard['workspace_id'], dataset_id)

        logger.info(f"[AUDIT] Refresh triggered for dataset {dataset_id}")
        _finish_history(history_id, 'completed')

        return jsonify({'success': True, 'message': 'Atualização iniciada com sucesso'})

    except Exception as e:
        logger.error(f"[AUDIT] Refresh error for dashboard {dashboard_id}: {str(e)}")
        _finish_history(history_id, 'failed', 'Falha na atualização')
        return jsonify({'success': False, 'error': _user_error(e, REFRESH_ERROR_MESSAGES)}), 400


def _finish_history(history_id, status, error_message=None):
    if not history_id:
        return
    updates = {'status': status, 'completed_at': utc_now().isoformat()}
    if error_message:
        updates['error_message'] = error_message
    try:
        db.update_rows('dashboard_refresh_history', {'id': f'eq.{history_id}'}, updates)
    except Exception as e:
        logger.warning(f"Failed to update refresh history {history_id}: {str(e)}")


# ============================================================================
# REFRESH HISTORY SYNC
# ============================================================================

def refresh_error_message(refresh: Dict[str, Any]):
    """Readable error for a failed Power BI refresh entry."""
    if refresh.get('status') != 'Failed' or not refresh.get('serviceExceptionJson'):
        return None
    try:
        parsed = json.loads(refresh['serviceExceptionJson'])
        return parsed.get('errorDescription') or parsed.get('message') or 'Erro desconhecido'
    except (ValueError, TypeError, AttributeError):
        return 'Falha na atualização'


def sync_dashboard_refreshes(access_token: str, dashboard: Dict[str, Any], cutoff) -> int:
    dataset_id = resolve_dataset_id(access_token, dashboard)
    refreshes = powerbi.get_refresh_history(access_token, dashboard['workspace_id'], dataset_id)
    logger.info(f"Dashboard {dashboard['id']}: found {len(refreshes)} refreshes")

    synced = 0
    for refresh in refreshes:
        started = parse_timestamp(refresh.get('startTime'))
        if not started or started < cutoff:
            continue

        existing = db.select_one(
            'dashboard_refresh_history',
            {'dashboard_id': f"eq.{dashboard['id']}", 'started_at': f"eq.{refresh['startTime']}"},
            select='id'
        )
        if existing:
            continue

        try:
            db.insert_rows('dashboard_refresh_history', {
                'dashboard_id': dashboard['id'],
                'user_id': dashboard.get('owner_id'),
                'started_at': refresh['startTime'],
                'completed_at': refresh.get('endTime'),
                'status': REFRESH_STATUS_MAP.get(refresh.get('status'), 'pending'),
                'error_message': refresh_error_message(refresh),
            })
            synced += 1
        except Exception as e:
            logger.error(f"Failed to insert refresh for dashboard {dashboard['id']}: {str(e)}")

    return synced


@embed_bp.route('/api/powerbi/refresh-history/sync', methods=['POST', 'OPTIONS'])
@require_cron_secret
def sync_refresh_history():
    """Import recent Power BI refreshes for every credentialed workspace dashboard."""
    try:
        dashboards = db.select_rows(
            'dashboards',
            {'credential_id': 'not.is.null', 'embed_type': 'eq.workspace_id'},
            select='id,workspace_id,dashboard_id,credential_id,dataset_id,owner_id'
        )
        cutoff = utc_now() - REFRESH_HISTORY_WINDOW

        by_credential: Dict[str, List[Dict[str, Any]]] = {}
        for dashboard in dashboards:
            by_credential.setdefault(dashboard['credential_id'], []).append(dashboard)

        logger.info(f"Syncing refresh history for {len(dashboards)} dashboards, {len(by_credential)} credentials")

        synced = 0
        errors = 0
        for credential_id, credential_dashboards in by_credential.items():
            try:
                credential = load_powerbi_credential(credential_id)
                if not credential:
                    continue
                access_token = powerbi.get_access_token(credential)
            except Exception as e:
                logger.error(f"Error with credential {credential_id}: {str(e)}")
                errors += 1
                continue

            for dashboard in credential_dashboards:
                try:
                    synced += sync_dashboard_refreshes(access_token, dashboard, cutoff)
                except Exception as e:
                    logger.error(f"Error syncing dashboard {dashboard['id']}: {str(e)}")
                    errors += 1

        db.delete_rows('dashboard_refresh_history', {'started_at': f'lt.{cutoff.isoformat()}'})

        logger.info(f"Refresh history sync finished: {synced} synced, {errors} errors")
        return jsonify({'success': True, 'synced': synced, 'errors': errors})

    except Exception as e:
        logger.error(f"Refresh history sync error: {str(e)}")
        return jsonify({'success': False, 'error': str(e)}), 500


# ============================================================================
# DATASET CHAT
# ============================================================================

def generate_dax_query(question: str) -> str:
    answer = ai_gateway.chat_completion(
        [
            {'role': 'system', 'content': DAX_SYSTEM_PROMPT},
            {'role': 'user', 'content': question},
        ],
        temperature=0.1
    )
    return ai_gateway.strip_code_fences(answer).strip()


def format_answer(question: str, rows: List[Dict[str, Any]]) -> str:
    return ai_gateway.chat_completion([
        {'role': 'system', 'content': ANSWER_SYSTEM_PROMPT},
        {'role': 'user', 'content': f'Pergunta do usuário: "{question}"\n\n'
                                    f'Resultado dos dados:\n{json.dumps(rows, indent=2, ensure_ascii=False, default=str)}'},
    ])


@embed_bp.route('/api/powerbi/chat', methods=['POST', 'OPTIONS'])
@require_user
def dataset_chat():
    """Answer a natural-language question against a dashboard's dataset."""
    caller = g.caller
    data = request.get_json(silent=True) or {}
    dashboard_id = data.get('dashboardId')
    question = (data.get('question') or '').strip()

    if not dashboard_id or not question:
        return jsonify({'success': False, 'error': 'dashboardId e question são obrigatórios'}), 400

    if not ai_gateway.ai_configured():
        return jsonify({'success': False, 'error': 'AI gateway not configured'}), 500

    try:
        dashboard = db.select_one('dashboards', {'id': f'eq.{dashboard_id}'},
                                  select='id,name,dataset_id,credential_id,owner_id')
        if not dashboard:
            return jsonify({'success': False, 'error': 'Dashboard não encontrado'}), 404

        if not caller['is_master_admin'] and not can_view_dashboard(caller['user_id'], dashboard):
            return jsonify({'success': False, 'error': USER_ERROR_MESSAGES['permission_denied']}), 403

        if not dashboard.get('dataset_id'):
            return jsonify({'success': False, 'error': 'Este dashboard não possui um dataset configurado'}), 400
        if not dashboard.get('credential_id'):
            return jsonify({'success': False, 'error': 'Este dashboard não possui credenciais configuradas'}), 400

        logger.info(f"Dataset question for dashboard {dashboard_id}: {question[:100]}")

        dax_query = generate_dax_query(question)
        credential = credential_for_dashboard(dashboard)
        access_token = powerbi.get_access_token(credential)
        rows = powerbi.execute_dax(access_token, dashboard['dataset_id'], dax_query)[:CHAT_MAX_ROWS]
        answer = format_answer(question, rows)

        return jsonify({'success': True, 'answer': answer, 'daxQuery': dax_query, 'rawData': rows})

    except ai_gateway.AIRateLimitError:
        return jsonify({'success': False, 'error': 'Limite de requisições excedido. Tente novamente em alguns minutos.'}), 429
    except Exception as e:
        logger.error(f"Dataset chat error for dashboard {dashboard_id}: {str(e)}")
        return jsonify({'success': False, 'error': _user_error(e)}), 400


# ============================================================================
# ACCESS LOGS
# ============================================================================

@embed_bp.route('/api/access-logs', methods=['POST', 'OPTIONS'])
@require_user
def record_access():
    """Record that the caller opened a dashboard, at most once per UTC day."""
    caller = g.caller
    data = request.get_json(silent=True) or {}
    dashboard_id = data.get('dashboardId')

    if not dashboard_id:
        return jsonify({'error': 'dashboardId is required'}), 400

    try:
        now = utc_now()
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)

        existing = db.select_one('dashboard_access_logs', {
            'user_id': f"eq.{caller['user_id']}",
            'dashboard_id': f'eq.{dashboard_id}',
            'accessed_at': f'gte.{day_start.isoformat()}',
        }, select='id')
        if existing:
            return jsonify({'logged': False})

        db.insert_rows('dashboard_access_logs', {
            'user_id': caller['user_id'],
            'dashboard_id': dashboard_id,
            'company_id': caller['company_id'],
            'user_agent': (request.headers.get('User-Agent') or '')[:500],
            'accessed_at': now.isoformat(),
        })
        return jsonify({'logged': True})

    except Exception as e:
        logger.error(f"Failed to record access for dashboard {dashboard_id}: {str(e)}")
        return jsonify({'error': 'Failed to record access'}), 500


def access_log_cutoff(now):
    """Twelve months and one day before now."""
    try:
        year_ago = now.replace(year=now.year - 1)
    except ValueError:
        # 29 February
        year_ago = now.replace(year=now.year - 1, month=3, day=1)
    return year_ago - timedelta(days=1)


@embed_bp.route('/api/access-logs/cleanup', methods=['POST', 'OPTIONS'])
@require_cron_secret
def cleanup_access_logs():
    """Drop access logs older than twelve months."""
    try:
        cutoff = access_log_cutoff(utc_now())
        deleted = db.delete_rows('dashboard_access_logs', {'accessed_at': f'lt.{cutoff.isoformat()}'})

        logger.info(f"Deleted {len(deleted)} access logs older than {cutoff.isoformat()}")
        return jsonify({'success': True, 'deleted_count': len(deleted), 'cutoff_date': cutoff.isoformat()})

    except Exception as e:
        logger.error(f"Access log cleanup error: {str(e)}")
        return jsonify({'success': False, 'error': str(e)}), 500

# Report Subscription API Routes
# Subscription management, scheduled processing, export and email delivery

import logging
from typing import Dict, Any, Optional, List

from flask import Blueprint, request, jsonify, g

import mailer
import powerbi
import supabase_client as db
from credential_vault import load_powerbi_credential
from report_schedule import (utc_now, is_due, compute_next_send_at, validate_schedule,
                             DEFAULT_INTERVAL_HOURS)
from request_auth import (require_admin, require_cron_secret, cron_secret_valid, get_request_user,
                          get_caller_context, can_manage_company)

logger = logging.getLogger(__name__)

reports_bp = Blueprint('reports', __name__)

SUBSCRIPTION_SELECT = (
    '*,'
    'dashboards(id,name,workspace_id,dashboard_id,public_link,embed_type,credential_id,report_section),'
    'companies:company_id(name,primary_color)'
)

EDITABLE_FIELDS = (
    'name', 'frequency', 'schedule_time', 'schedule_days_of_week', 'schedule_day_of_month',
    'schedule_interval_hours', 'export_format', 'report_page', 'is_active',
)

POWERBI_APP_URL = 'https://app.powerbi.com'


class DeliveryError(Exception):
    pass


def _serialize_next(sub: Dict[str, Any]) -> Optional[str]:
    next_at = compute_next_send_at(sub, utc_now())
    return next_at.isoformat() if next_at else None


def _clean_recipients(raw) -> List[Dict[str, Any]]:
    recipients = []
    seen = set()
    for item in raw or []:
        if isinstance(item, str):
            item = {'email': item}
        email = (item.get('email') or '').strip().lower()
        if not email or '@' not in email or email in seen:
            continue
        seen.add(email)
        recipients.append({
            'email': email,
            'name': item.get('name') or None,
            'apply_rls': bool(item.get('apply_rls', False)),
            'rls_user_id': item.get('rls_user_id'),
        })
    return recipients


def _replace_recipients(subscription_id: str, recipients: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    db.delete_rows('subscription_recipients', {'subscription_id': f'eq.{subscription_id}'})
    if not recipients:
        return []
    return db.insert_rows('subscription_recipients',
                          [{**recipient, 'subscription_id': subscription_id} for recipient in recipients])


# ============================================================================
# DELIVERY
# ============================================================================

def build_links(dashboard: Dict[str, Any]):
    """(app dashboard link, direct Power BI link) for an email."""
    dashboard_link = f"{mailer.APP_URL.rstrip('/')}/dashboard/{dashboard['id']}"
    if dashboard.get('embed_type') == 'public_link' and dashboard.get('public_link'):
        direct_link = dashboard['public_link']
    else:
        direct_link = f"{POWERBI_APP_URL}/groups/{dashboard.get('workspace_id')}/reports/{dashboard.get('dashboard_id')}"
    return dashboard_link, direct_link


def try_export_image(subscription: Dict[str, Any], dashboard: Dict[str, Any]) -> Optional[bytes]:
    """PNG export of the report, or None when the dashboard cannot be exported."""
    if not dashboard.get('credential_id') or dashboard.get('embed_type') == 'public_link':
        return None

    try:
        credential = load_powerbi_credential(dashboard['credential_id'])
        if not credential:
            raise DeliveryError('Credential not found')
        access_token = powerbi.get_access_token(credential)
        image = powerbi.export_report_png(
            access_token,
            dashboard['workspace_id'],
            dashboard['dashboard_id'],
            subscription.get('report_page') or dashboard.get('report_section')
        )
        logger.info(f"PNG export succeeded for subscription {subscription['id']} ({len(image)} bytes)")
        return image
    except Exception as e:
        logger.warning(f"PNG export failed for subscription {subscription['id']}, falling back to link: {str(e)}")
        return None


def deliver_subscription(subscription_id: str) -> Dict[str, Any]:
    """Export a subscription's report and email it to every recipient."""
    subscription = db.select_one('report_subscriptions', {'id': f'eq.{subscription_id}'},
                                 select=SUBSCRIPTION_SELECT)
    if not subscription:
        raise DeliveryError('Subscription not found')

    log_id = None
    try:
        log_rows = db.insert_rows('subscription_logs', {'subscription_id': subscription_id, 'status': 'exporting'})
        log_id = log_rows[0]['id'] if log_rows else None
    except Exception as e:
        logger.warning(f"Failed to create subscription log for {subscription_id}: {str(e)}")

    try:
        recipients = db.select_rows('subscription_recipients', {'subscription_id': f'eq.{subscription_id}'})
        if not recipients:
            raise DeliveryError('No recipients configured')

        dashboard = subscription.get('dashboards')
        if not dashboard:
            raise DeliveryError('Dashboard not found')

        company = subscription.get('companies') or {}
        primary_color = company.get('primary_color') or mailer.DEFAULT_PRIMARY_COLOR
        company_name = company.get('name') or mailer.DEFAULT_COMPANY_NAME

        image = try_export_image(subscription, dashboard)
        dashboard_link, direct_link = build_links(dashboard)

        sent = mailer.send_report_email(
            recipients,
            subject=f"📊 Relatório: {dashboard.get('name') or subscription.get('name')}",
            dashboard_name=dashboard.get('name') or subscription.get('name') or '',
            dashboard_link=dashboard_link,
            direct_link=direct_link,
            image_png=image,
            primary_color=primary_color,
            company_name=company_name,
        )
        if sent == 0:
            raise DeliveryError('Failed to send email to any recipient')

        now = utc_now()
        status = 'sent_with_image' if image else 'sent_with_link'
        if log_id:
            db.update_rows('subscription_logs', {'id': f'eq.{log_id}'}, {
                'status': status,
                'completed_at': now.isoformat(),
                'recipients_count': sent,
            })

        db.update_rows('report_subscriptions', {'id': f'eq.{subscription_id}'}, {
            'last_sent_at': now.isoformat(),
            'next_send_at': _serialize_next({**subscription, 'last_sent_at': now.isoformat()}),
        })

        logger.info(f"Subscription {subscription_id} delivered to {sent} recipients ({status})")
        return {
            'success': True,
            'message': f'Relatório enviado para {sent} destinatário(s)',
            'exportedAsImage': bool(image),
        }

    except Exception as e:
        if log_id:
            try:
                db.update_rows('subscription_logs', {'id': f'eq.{log_id}'}, {
                    'status': 'failed',
                    'completed_at': utc_now().isoformat(),
                    'error_message': str(e)[:1000],
                })
            except Exception as log_error:
                logger.warning(f"Failed to mark subscription log {log_id} as failed: {str(log_error)}")
        raise


@reports_bp.route('/api/reports/export', methods=['POST', 'OPTIONS'])
def export_report():
    """Deliver one subscription now. Called by the scheduler or by an admin."""
    if request.method == 'OPTIONS':
        return jsonify({'message': 'OK'})

    data = request.get_json(silent=True) or {}
    subscription_id = data.get('subscriptionId')
    if not subscription_id:
        return jsonify({'success': False, 'error': 'subscriptionId is required'}), 400

    try:
        if not cron_secret_valid():
            user = get_request_user()
            if not user:
                return jsonify({'success': False, 'error': 'Não autenticado'}), 401
            caller = get_caller_context(user)
            subscription = db.select_one('report_subscriptions', {'id': f'eq.{subscription_id}'},
                                         select='id,company_id')
            if not subscription:
                return jsonify({'success': False, 'error': 'Subscription not found'}), 404
            if not can_manage_company(caller, subscription.get('company_id')):
                return jsonify({'success': False, 'error': 'Acesso negado'}), 403

        return jsonify(deliver_subscription(subscription_id))

    except DeliveryError as e:
        logger.error(f"Export failed for subscription {subscription_id}: {str(e)}")
        return jsonify({'success': False, 'error': str(e)}), 400
    except Exception as e:
        logger.error(f"Export error for subscription {subscription_id}: {str(e)}")
        return jsonify({'success': False, 'error': str(e)}), 500


@reports_bp.route('/api/reports/process', methods=['POST', 'OPTIONS'])
@require_cron_secret
def process_subscriptions():
    """Deliver every active subscription whose schedule matches the current time."""
    try:
        now = utc_now()
        subscriptions = db.select_rows('report_subscriptions', {'is_active': 'eq.true'})
        logger.info(f"Processing subscriptions at {now.isoformat()}: {len(subscriptions)} active")

        due = []
        for sub in subscriptions:
            try:
                if is_due(sub, now):
                    due.append(sub)
                    logger.info(f"Queuing subscription: {sub.get('name')} ({sub['id']})")
            except ValueError as e:
                logger.warning(f"Skipping subscription {sub['id']} with invalid schedule: {str(e)}")

        results = []
        for sub in due:
            try:
                outcome = deliver_subscription(sub['id'])
                results.append({'id': sub['id'], 'success': outcome['success']})
            except Exception as e:
                logger.error(f"Failed to process subscription {sub['id']}: {str(e)}")
                results.append({'id': sub['id'], 'success': False, 'error': str(e)})

        return jsonify({'success': True, 'processed': len(due), 'results': results})

    except Exception as e:
        logger.error(f"Error processing subscriptions: {str(e)}")
        return jsonify({'success': False, 'error': str(e)}), 500


# ============================================================================
# SUBSCRIPTION MANAGEMENT
# ============================================================================

def _load_manageable(subscription_id: str):
    """(subscription, error response) for the current admin caller."""
    subscription = db.select_one('report_subscriptions', {'id': f'eq.{subscription_id}'})
    if not subscription:
        return None, (jsonify({'error': 'Subscription not found'}), 404)
    if not can_manage_company(g.caller, subscription.get('company_id')):
        return None, (jsonify({'error': 'Acesso negado'}), 403)
    return subscription, None


@reports_bp.route('/api/report-subscriptions', methods=['GET', 'POST', 'OPTIONS'])
@require_admin
def handle_subscriptions():
    caller = g.caller

    if request.method == 'GET':
        dashboard_id = request.args.get('dashboardId')
        if not dashboard_id:
            return jsonify({'error': 'dashboardId is required'}), 400
        try:
            filters = {'dashboard_id': f'eq.{dashboard_id}'}
            if not caller['is_master_admin']:
                filters['company_id'] = f"eq.{caller['company_id']}"
            subscriptions = db.select_rows('report_subscriptions', filters, select='*,subscription_recipients(*)',
                                           order='created_at.desc')
            for sub in subscriptions:
                sub['recipients'] = sub.pop('subscription_recipients', [])
            return jsonify({'subscriptions': subscriptions})
        except Exception as e:
            logger.error(f"Failed to list subscriptions for dashboard {dashboard_id}: {str(e)}")
            return jsonify({'error': 'Failed to list subscriptions'}), 500

    data = request.get_json(silent=True) or {}
    required = ['name', 'dashboard_id', 'frequency']
    missing = [field for field in required if not data.get(field)]
    if missing:
        return jsonify({'error': f'Missing required fields: {", ".join(missing)}'}), 400

    errors = validate_schedule(data)
    if errors:
        return jsonify({'error': 'Invalid schedule', 'details': errors}), 400

    try:
        dashboard = db.select_one('dashboards', {'id': f"eq.{data['dashboard_id']}"}, select='id,company_id')
        if not dashboard:
            return jsonify({'error': 'Dashboard not found'}), 404

        company_id = dashboard.get('company_id') or caller['company_id']
        if not can_manage_company(caller, company_id):
            return jsonify({'error': 'Acesso negado'}), 403

        row = {field: data[field] for field in EDITABLE_FIELDS if field in data}
        row.setdefault('schedule_time', '08:00:00')
        if row.get('frequency') == 'interval':
            row.setdefault('schedule_interval_hours', DEFAULT_INTERVAL_HOURS)
        row.update({
            'dashboard_id': data['dashboard_id'],
            'company_id': company_id,
            'created_by': caller['user_id'],
            'is_active': data.get('is_active', True),
        })
        row['next_send_at'] = _serialize_next(row)

        created = db.insert_rows('report_subscriptions', row)[0]
        created['recipients'] = _replace_recipients(created['id'], _clean_recipients(data.get('recipients')))

        logger.info(f"Created report subscription {created['id']} ({row['frequency']}) for dashboard {data['dashboard_id']}")
        return jsonify({'subscription': created}), 201

    except Exception as e:
        logger.error(f"Failed to create subscription: {str(e)}")
        return jsonify({'error': 'Failed to create subscription'}), 500


@reports_bp.route('/api/report-subscriptions/<subscription_id>', methods=['PATCH', 'DELETE', 'OPTIONS'])
@require_admin
def handle_subscription(subscription_id):
    try:
        subscription, error = _load_manageable(subscription_id)
        if error:
            return error

        if request.method == 'DELETE':
            db.delete_rows('subscription_recipients', {'subscription_id': f'eq.{subscription_id}'})
            db.delete_rows('subscription_logs', {'subscription_id': f'eq.{subscription_id}'})
            db.delete_rows('report_subscriptions', {'id': f'eq.{subscription_id}'})
            logger.info(f"Deleted report subscription {subscription_id}")
            return jsonify({'success': True})

        data = request.get_json(silent=True) or {}
        updates = {field: data[field] for field in EDITABLE_FIELDS if field in data}

        merged = {**subscription, **updates}
        errors = validate_schedule(merged)
        if errors:
            return jsonify({'error': 'Invalid schedule', 'details': errors}), 400

        updates['next_send_at'] = _serialize_next(merged)
        updates['updated_at'] = utc_now().isoformat()
        updated = db.update_rows('report_subscriptions', {'id': f'eq.{subscription_id}'}, updates)[0]

        if 'recipients' in data:
            updated['recipients'] = _replace_recipients(subscription_id, _clean_recipients(data['recipients']))

        return jsonify({'subscription': updated})

    except Exception as e:
        logger.error(f"Failed to update subscription {subscription_id}: {str(e)}")
        return jsonify({'error': 'Failed to update subscription'}), 500

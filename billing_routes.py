# Billing API Routes
# Subscription status, additional-user checkout, Stripe webhooks, alerts and plan usage

import os
import json
import math
import logging
from datetime import datetime, timedelta, timezone
from html import escape
from typing import Dict, Any, Optional, List

import stripe
from flask import Blueprint, request, jsonify, g

import mailer
import plan_limits
import supabase_client as db
from report_schedule import utc_now, parse_timestamp
from request_auth import require_user, cron_secret_valid, get_request_user, get_caller_context

logger = logging.getLogger(__name__)

billing_bp = Blueprint('billing', __name__)

# Stripe Configuration
STRIPE_SECRET_KEY = os.environ.get('STRIPE_SECRET_KEY')
STRIPE_WEBHOOK_SECRET = os.environ.get('STRIPE_WEBHOOK_SECRET')

# Configure Stripe
if STRIPE_SECRET_KEY:
    stripe.api_key = STRIPE_SECRET_KEY

GRACE_PERIOD_DAYS = 30
DEFAULT_TRIAL_DAYS = 7
TRIAL_ALERT_DAYS = (3, 1, 0)
ALERT_DEDUPE_WINDOW = timedelta(hours=24)
ACTIVE_STATUSES = ('active', 'trial')


def days_until(moment: Optional[datetime], now: Optional[datetime] = None) -> int:
    """Whole days from now until moment, rounded up."""
    if moment is None:
        return 0
    now = now or utc_now()
    return math.ceil((moment - now).total_seconds() / 86400)


def trial_days_remaining(subscription: Dict[str, Any], now: Optional[datetime] = None) -> int:
    end = parse_timestamp(subscription.get('current_period_end'))
    if end is None:
        created = parse_timestamp(subscription.get('created_at')) or (now or utc_now())
        end = created + timedelta(days=DEFAULT_TRIAL_DAYS)
    return days_until(end, now)


def _from_epoch(value) -> Optional[str]:
    if not value:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc).isoformat()


def _first_item(stripe_sub) -> Dict[str, Any]:
    items = stripe_sub.get('items') or {}
    data = items.get('data') or []
    return data[0] if data else {}


def _period_field(stripe_sub, field: str):
    """Billing period bounds moved from the subscription onto its items in newer API versions."""
    return stripe_sub.get(field) or _first_item(stripe_sub).get(field)


def _product_id(stripe_sub) -> Optional[str]:
    product = (_first_item(stripe_sub).get('price') or {}).get('product')
    if isinstance(product, dict):
        return product.get('id')
    return product


def _plan_name(plan_key: Optional[str]) -> Dict[str, Any]:
    plan = plan_limits.get_plan(plan_key) if plan_key else None
    return plan or {}


# ============================================================================
# SUBSCRIPTION STATUS
# ============================================================================

def resolve_subscription_status(user: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    """Work out the caller's access state from the local row and Stripe."""
    now = now or utc_now()
    local = db.select_one('subscriptions', {'user_id': f"eq.{user['id']}"})

    if local and local.get('is_master_managed'):
        plan = _plan_name(local.get('plan'))
        return {
            'subscribed': local.get('status') in ACTIVE_STATUSES,
            'status': local.get('status'),
            'planKey': local.get('plan'),
            'planName': plan.get('name') or local.get('plan'),
            'productId': plan.get('stripe_product_id'),
            'subscriptionEnd': local.get('current_period_end'),
            'isTrialing': local.get('status') == 'trial',
            'isMasterManaged': True,
            'isBlocked': False,
            'trialDaysRemaining': trial_days_remaining(local, now),
        }

    customers = stripe.Customer.list(email=user['email'], limit=1)
    if not customers.data:
        return _status_without_customer(local, now)

    customer_id = customers.data[0]['id']
    subscriptions = stripe.Subscription.list(customer=customer_id, status='all', limit=10).data
    active = next((s for s in subscriptions if s.get('status') in ('active', 'trialing')), None)

    if not active:
        return _status_in_grace_period(local, customer_id, subscriptions[0] if subscriptions else None, now)

    product_id = _product_id(active)
    plan = plan_limits.get_plan_by_product(product_id) if product_id else None
    plan_key = plan.get('plan_key') if plan else None
    is_trialing = active.get('status') == 'trialing'
    subscription_end = _from_epoch(_period_field(active, 'current_period_end'))

    if local:
        db.update_rows('subscriptions', {'id': f"eq.{local['id']}"}, {
            'status': 'trial' if is_trialing else 'active',
            'plan': plan_key or 'free',
            'stripe_customer_id': customer_id,
            'stripe_subscription_id': active.get('id'),
            'current_period_start': _from_epoch(_period_field(active, 'current_period_start')),
            'current_period_end': subscription_end,
        })

    trial_days = 0
    if is_trialing and active.get('trial_end'):
        trial_days = days_until(parse_timestamp(_from_epoch(active['trial_end'])), now)

    return {
        'subscribed': True,
        'status': 'trial' if is_trialing else 'active',
        'planKey': plan_key,
        'planName': (plan or {}).get('name') or plan_key,
        'productId': product_id,
        'subscriptionEnd': subscription_end,
        'isTrialing': is_trialing,
        'isMasterManaged': False,
        'isBlocked': False,
        'trialDaysRemaining': max(0, trial_days),
    }


def _status_without_customer(local: Optional[Dict[str, Any]], now: datetime) -> Dict[str, Any]:
    if not local or local.get('status') not in ACTIVE_STATUSES:
        return {
            'subscribed': False,
            'status': 'inactive',
            'planKey': None,
            'productId': None,
            'subscriptionEnd': None,
            'isTrialing': False,
            'isMasterManaged': False,
            'isBlocked': True,
            'trialDaysRemaining': 0,
        }

    is_trialing = local['status'] == 'trial'
    is_blocked = False
    trial_days = 0
    period_end = parse_timestamp(local.get('current_period_end'))

    if period_end:
        remaining = days_until(period_end, now)
        if is_trialing:
            trial_days = remaining
            is_blocked = remaining <= 0
        else:
            is_blocked = remaining < 0
    elif is_trialing:
        trial_days = trial_days_remaining(local, now)
        is_blocked = trial_days <= 0

    if is_blocked:
        db.update_rows('subscriptions', {'id': f"eq.{local['id']}"}, {'status': 'expired'})
        logger.info(f"Subscription {local['id']} expired")

    plan = _plan_name(local.get('plan'))
    return {
        'subscribed': not is_blocked,
        'status': 'expired' if is_blocked else local['status'],
        'planKey': local.get('plan'),
        'planName': plan.get('name') or local.get('plan'),
        'productId': plan.get('stripe_product_id'),
        'subscriptionEnd': local.get('current_period_end'),
        'isTrialing': is_trialing and not is_blocked,
        'isMasterManaged': False,
        'isBlocked': is_blocked,
        'trialDaysRemaining': max(0, trial_days),
    }


def _status_in_grace_period(local: Optional[Dict[str, Any]], customer_id: str, recent, now: datetime) -> Dict[str, Any]:
    period_end = _from_epoch(_period_field(recent, 'current_period_end')) if recent else None

    is_blocked = True
    days_remaining = 0
    if period_end:
        days_remaining = days_until(parse_timestamp(period_end) + timedelta(days=GRACE_PERIOD_DAYS), now)
        is_blocked = days_remaining <= 0

    plan_key = local.get('plan') if local else None
    product_id = _product_id(recent) if recent else None
    if product_id:
        plan = plan_limits.get_plan_by_product(product_id)
        if plan:
            plan_key = plan['plan_key']

    if local:
        db.update_rows('subscriptions', {'id': f"eq.{local['id']}"}, {
            'status': 'expired' if is_blocked else 'canceled',
            'stripe_customer_id': customer_id,
            'stripe_subscription_id': recent.get('id') if recent else None,
        })

    return {
        'subscribed': False,
        'status': recent.get('status') if recent else 'inactive',
        'planKey': plan_key,
        'productId': product_id,
        'subscriptionEnd': period_end,
        'isTrialing': False,
        'isMasterManaged': False,
        'isBlocked': is_blocked,
        'gracePeriodDaysRemaining': max(0, days_remaining),
    }


@billing_bp.route('/api/billing/check-subscription', methods=['GET', 'POST', 'OPTIONS'])
@require_user
def check_subscription():
    """Subscription state for the signed-in user, synced from Stripe."""
    if not STRIPE_SECRET_KEY:
        return jsonify({'error': 'STRIPE_SECRET_KEY not configured'}), 500

    user = g.caller['user']
    if not user.get('email'):
        return jsonify({'error': 'User email not available'}), 400

    try:
        return jsonify(resolve_subscription_status(user))
    except Exception as e:
        logger.error(f"Check subscription error for user {user['id']}: {str(e)}")
        return jsonify({'error': str(e)}), 500


# ============================================================================
# ADDITIONAL USERS CHECKOUT
# ============================================================================

@billing_bp.route('/api/billing/additional-users-checkout', methods=['POST', 'OPTIONS'])
@require_user
def create_additional_users_checkout():
    """Stripe Checkout session for buying extra user seats."""
    if not STRIPE_SECRET_KEY:
        return jsonify({'error': 'Payment system not configured'}), 500

    caller = g.caller
    data = request.get_json(silent=True) or {}
    quantity = data.get('quantity')

    if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
        return jsonify({'error': 'Quantity must be at least 1'}), 400

    try:
        if not caller['company_id']:
            return jsonify({'error': 'User has no company'}), 400

        subscription = db.select_one('subscriptions', {'user_id': f"eq.{caller['user_id']}"},
                                     select='plan,stripe_customer_id')
        if not subscription:
            return jsonify({'error': 'User has no subscription'}), 400

        plan = plan_limits.get_plan(subscription.get('plan'))
        if not plan or not plan.get('stripe_additional_user_price_id'):
            return jsonify({'error': 'This plan does not support additional users'}), 400

        customer_id = subscription.get('stripe_customer_id')
        if not customer_id:
            customers = stripe.Customer.list(email=caller['email'], limit=1)
            if customers.data:
                customer_id = customers.data[0]['id']

        origin = request.headers.get('Origin') or mailer.APP_URL
        params = {
            'line_items': [{'price': plan['stripe_additional_user_price_id'], 'quantity': quantity}],
            'mode': 'subscription',
            'metadata': {
                'type': 'additional_users',
                'company_id': caller['company_id'],
                'user_id': caller['user_id'],
                'quantity': str(quantity),
            },
            'success_url': f"{origin}/add-users?success=true&quantity={quantity}",
            'cancel_url': f"{origin}/add-users?canceled=true",
        }
        # Stripe rejects sessions that set both
        if customer_id:
            params['customer'] = customer_id
        else:
            params['customer_email'] = caller['email']

        session = stripe.checkout.Session.create(**params)
        logger.info(f"Created additional users checkout {session.id} for company {caller['company_id']} ({quantity} seats)")
        return jsonify({'url': session.url})

    except stripe.error.StripeError as e:
        logger.error(f"Stripe error creating additional users checkout: {str(e)}")
        return jsonify({'error': 'Payment system error'}), 500
    except Exception as e:
        logger.error(f"Error creating additional users checkout: {str(e)}")
        return jsonify({'error': str(e)}), 500


# ============================================================================
# ALERTS
# ============================================================================

def _first_name(name: Optional[str]) -> str:
    return name.split(' ')[0] if name else ''


def render_alert(alert: Dict[str, Any]):
    """(subject, html) for an alert request, or None for an unknown type."""
    greeting = f"Olá, {escape(_first_name(alert.get('userName')))}!" if alert.get('userName') else 'Olá!'
    subscription_url = f"{mailer.APP_URL.rstrip('/')}/subscription"

    if alert['type'] == 'trial_expiring':
        days = alert.get('daysRemaining')
        if days == 0:
            days_text = 'Seu período de trial expira hoje!'
        elif days == 1:
            days_text = 'Seu período de trial expira amanhã!'
        else:
            days_text = f'Seu período de trial expira em {days} dias'
        content = f"""
              <h2 style="color: #1e293b; font-size: 24px; margin: 0 0 20px 0;">{greeting}</h2>
              <p>{days_text}</p>
              <p>Para continuar aproveitando todos os recursos do Care BI sem interrupções, assine agora um de nossos planos.</p>
              <div style="background-color: #fef3c7; border-left: 4px solid #f59e0b; padding: 16px; margin: 20px 0; border-radius: 4px;">
                <p style="color: #92400e; font-size: 14px; margin: 0;"><strong>Importante:</strong> Após o término do trial, o acesso aos dashboards será bloqueado até a ativação de uma assinatura.</p>
              </div>"""
        return f'⚠️ {days_text} - Care BI', mailer.render_layout(content, subscription_url, 'Ver Planos')

    if alert['type'] == 'payment_failed':
        reason = ''
        if alert.get('failureReason'):
            reason = f"<p><strong>Motivo:</strong> {escape(str(alert['failureReason']))}</p>"
        content = f"""
              <h2 style="color: #1e293b; font-size: 24px; margin: 0 0 20px 0;">{greeting}</h2>
              <p>Infelizmente não conseguimos processar o pagamento da sua assinatura.</p>
              {reason}
              <p>Para evitar a interrupção do serviço, por favor atualize seus dados de pagamento.</p>
              <div style="background-color: #fef2f2; border-left: 4px solid #ef4444; padding: 16px; margin: 20px 0; border-radius: 4px;">
                <p style="color: #991b1b; font-size: 14px; margin: 0;"><strong>Atenção:</strong> Após múltiplas tentativas de cobrança falhadas, sua assinatura poderá ser cancelada automaticamente.</p>
              </div>"""
        return '❌ Falha no pagamento - Care BI', mailer.render_layout(content, subscription_url, 'Atualizar Pagamento')

    return None


def notification_type_for(alert: Dict[str, Any]) -> str:
    if alert['type'] == 'trial_expiring':
        return f"trial_expiring_{alert.get('daysRemaining')}d"
    return alert['type']


def recently_notified(user_id: str, notification_type: str, now: Optional[datetime] = None) -> bool:
    since = (now or utc_now()) - ALERT_DEDUPE_WINDOW
    existing = db.select_one('notification_logs', {
        'user_id': f'eq.{user_id}',
        'notification_type': f'eq.{notification_type}',
        'sent_at': f'gte.{since.isoformat()}',
    }, select='id')
    return existing is not None


def send_alert(alert: Dict[str, Any]) -> Dict[str, Any]:
    """Email one alert and record it in notification_logs."""
    rendered = render_alert(alert)
    if not rendered:
        return {'success': False, 'email': alert.get('email'), 'type': alert.get('type'), 'error': 'Unknown alert type'}
    subject, html = rendered

    try:
        mailer.send_email(alert['email'], subject, html, text=subject, to_name=alert.get('userName'))
        logger.info(f"Alert {alert['type']} sent to {alert['email']}")

        if alert.get('userId'):
            db.insert_rows('notification_logs', {
                'user_id': alert['userId'],
                'notification_type': notification_type_for(alert),
                'sent_at': utc_now().isoformat(),
                'metadata': {'daysRemaining': alert.get('daysRemaining'), 'failureReason': alert.get('failureReason')},
            })
        return {'success': True, 'email': alert['email'], 'type': alert['type']}

    except Exception as e:
        logger.error(f"Failed to send alert {alert.get('type')} to {alert.get('email')}: {str(e)}")
        return {'success': False, 'email': alert.get('email'), 'type': alert.get('type'), 'error': str(e)}


def collect_trial_alerts(now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Trial subscriptions 3, 1 or 0 days from expiry that were not alerted today."""
    now = now or utc_now()
    trials = db.select_rows('subscriptions', {
        'status': 'eq.trial',
        'is_master_managed': 'eq.false',
        'current_period_end': 'not.is.null',
    }, select='id,user_id,status,current_period_end,is_master_managed')
    logger.info(f"Found {len(trials)} trial subscriptions")

    alerts = []
    for sub in trials:
        days = days_until(parse_timestamp(sub['current_period_end']), now)
        if days not in TRIAL_ALERT_DAYS:
            continue

        if recently_notified(sub['user_id'], f'trial_expiring_{days}d', now):
            logger.info(f"Trial alert already sent to user {sub['user_id']} ({days}d)")
            continue

        profile = db.get_profile(sub['user_id'], select='email,full_name')
        if not profile or not profile.get('email'):
            logger.info(f"No email found for user {sub['user_id']}")
            continue

        alerts.append({
            'type': 'trial_expiring',
            'userId': sub['user_id'],
            'email': profile['email'],
            'userName': profile.get('full_name') or profile['email'],
            'daysRemaining': days,
        })
    return alerts


@billing_bp.route('/api/billing/alerts', methods=['POST', 'OPTIONS'])
def send_subscription_alerts():
    """Scheduled trial-expiry scan, or one explicit alert sent by an admin."""
    if request.method == 'OPTIONS':
        return jsonify({'message': 'OK'})

    if not cron_secret_valid():
        user = get_request_user()
        if not user or not get_caller_context(user)['is_admin']:
            return jsonify({'error': 'Unauthorized'}), 403

    try:
        data = request.get_json(silent=True) or {}
        if data.get('type'):
            if not data.get('email'):
                return jsonify({'error': 'email is required'}), 400
            alerts = [data]
        else:
            alerts = collect_trial_alerts()

        results = [send_alert(alert) for alert in alerts]
        return jsonify({'success': True, 'processed': len(alerts), 'results': results})

    except Exception as e:
        logger.error(f"Subscription alerts error: {str(e)}")
        return jsonify({'error': str(e)}), 500


# ============================================================================
# STRIPE WEBHOOK
# ============================================================================

def handle_payment_failed(invoice) -> None:
    customer_id = invoice.get('customer')
    customer = stripe.Customer.retrieve(customer_id)
    if customer.get('deleted'):
        logger.info(f"Customer {customer_id} was deleted")
        return

    email = customer.get('email')
    if not email:
        logger.info(f"No email found for customer {customer_id}")
        return

    profile = db.select_one('profiles', {'email': f'eq.{email}'}, select='id,full_name')
    if not profile:
        logger.info(f"No profile found for {email}")
        return

    if recently_notified(profile['id'], 'payment_failed'):
        logger.info(f"Payment failed alert already sent to {email} in the last 24h")
        return

    failure = (invoice.get('last_finalization_error') or {}).get('message') or 'Cartão recusado'
    send_alert({
        'type': 'payment_failed',
        'userId': profile['id'],
        'email': email,
        'userName': profile.get('full_name'),
        'failureReason': failure,
    })


def handle_subscription_updated(subscription) -> None:
    status = subscription.get('status')
    if status == 'active' and subscription.get('cancel_at_period_end'):
        status = 'canceling'

    updates = {'status': status, 'updated_at': utc_now().isoformat()}
    period_start = _period_field(subscription, 'current_period_start')
    period_end = _period_field(subscription, 'current_period_end')
    if period_start:
        updates['current_period_start'] = _from_epoch(period_start)
    if period_end:
        updates['current_period_end'] = _from_epoch(period_end)

    db.update_rows('subscriptions', {'stripe_subscription_id': f"eq.{subscription['id']}"}, updates)
    logger.info(f"Subscription {subscription['id']} updated to {status}")


def _invoice_subscription_id(invoice) -> Optional[str]:
    subscription_id = invoice.get('subscription')
    if not subscription_id:
        details = (invoice.get('parent') or {}).get('subscription_details') or {}
        subscription_id = details.get('subscription')
    return subscription_id


@billing_bp.route('/webhooks/stripe', methods=['POST'])
def stripe_webhook():
    """Keep local subscription rows in step with Stripe."""
    if not STRIPE_SECRET_KEY:
        logger.error("STRIPE_SECRET_KEY not configured")
        return jsonify({'error': 'STRIPE_SECRET_KEY not configured'}), 500

    payload = request.get_data()

    try:
        if STRIPE_WEBHOOK_SECRET:
            sig_header = request.headers.get('stripe-signature')
            if not sig_header:
                return jsonify({'error': 'No signature'}), 400
            event = stripe.Webhook.construct_event(payload, sig_header, STRIPE_WEBHOOK_SECRET)
        else:
            logger.warning("STRIPE_WEBHOOK_SECRET not configured, skipping signature verification")
            event = json.loads(payload)
    except ValueError:
        logger.error("Invalid payload")
        return jsonify({'error': 'Invalid payload'}), 400
    except stripe.error.SignatureVerificationError:
        logger.error("Invalid signature")
        return jsonify({'error': 'Invalid signature'}), 400

    event_type = event['type']
    obj = event['data']['object']
    logger.info(f"Webhook event type: {event_type}")

    try:
        if event_type == 'invoice.payment_failed':
            handle_payment_failed(obj)

        elif event_type == 'customer.subscription.deleted':
            db.update_rows('subscriptions', {'stripe_subscription_id': f"eq.{obj['id']}"},
                           {'status': 'canceled', 'updated_at': utc_now().isoformat()})
            logger.info(f"Subscription {obj['id']} marked as canceled")

        elif event_type == 'customer.subscription.updated':
            handle_subscription_updated(obj)

        elif event_type == 'invoice.payment_succeeded':
            subscription_id = _invoice_subscription_id(obj)
            if subscription_id:
                db.update_rows('subscriptions',
                               {'stripe_subscription_id': f'eq.{subscription_id}', 'status': 'eq.past_due'},
                               {'status': 'active', 'updated_at': utc_now().isoformat()})

        else:
            logger.info(f"Unhandled event type: {event_type}")

        return jsonify({'received': True})

    except Exception as e:
        logger.error(f"Stripe webhook error on {event_type}: {str(e)}")
        return jsonify({'error': str(e)}), 400


# ============================================================================
# PLAN USAGE
# ============================================================================

@billing_bp.route('/api/billing/plan', methods=['GET', 'OPTIONS'])
@require_user
def get_company_plan():
    """Plan, limits, features and usage for the caller's company."""
    caller = g.caller
    try:
        company_plan = plan_limits.load_company_plan(caller['user_id'], caller['company_id'], caller['is_admin'])
        limits = {
            key: plan_limits.check_limit(company_plan, key, caller['is_master_admin'])
            for key in plan_limits.USAGE_SOURCES
        }
        features = {
            f['feature_key']: plan_limits.has_feature(company_plan, f['feature_key'], caller['is_master_admin'])
            for f in company_plan['features']
        }
        subscription = company_plan['subscription'] or {}
        return jsonify({
            'plan': company_plan['plan'],
            'subscriptionStatus': subscription.get('status', 'inactive'),
            'usage': company_plan['usage'],
            'limits': limits,
            'features': features,
        })

    except Exception as e:
        logger.error(f"Failed to load plan for user {caller['user_id']}: {str(e)}")
        return jsonify({'error': 'Failed to load plan'}), 500

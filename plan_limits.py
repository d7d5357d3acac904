"""
Subscription plan resolution and usage limits for a company.

A company's plan is the plan of its admin's subscription. Plan limits and
features can be overridden per company through company_custom_limits and
company_custom_features. Master admins are never limited.
"""

import logging
from typing import Dict, Any, Optional, List

import supabase_client as db

logger = logging.getLogger(__name__)

# limit_key -> (table, extra filters) counted per company
USAGE_SOURCES = {
    'dashboards': ('dashboards', {}),
    'users': ('profiles', {'is_active': 'eq.true'}),
    'credentials': ('power_bi_configs', {}),
}


def find_company_admin_id(company_id: str) -> Optional[str]:
    profiles = db.select_rows('profiles', {'company_id': f'eq.{company_id}'}, select='id')
    user_ids = [p['id'] for p in profiles]
    if not user_ids:
        return None
    admins = db.select_rows('user_roles', {'role': 'eq.admin', 'user_id': f"in.({','.join(user_ids)})"},
                            select='user_id')
    return admins[0]['user_id'] if admins else None


def get_plan(plan_key: str) -> Optional[Dict[str, Any]]:
    return db.select_one('subscription_plans', {'plan_key': f'eq.{plan_key}'})


def get_plan_by_product(product_id: str) -> Optional[Dict[str, Any]]:
    return db.select_one('subscription_plans', {'stripe_product_id': f'eq.{product_id}'})


def _apply_overrides(rows: List[Dict[str, Any]], overrides: List[Dict[str, Any]], key: str,
                     fields: List[str]) -> List[Dict[str, Any]]:
    by_key = {o[key]: o for o in overrides}
    merged = []
    for row in rows:
        override = by_key.get(row[key])
        merged.append({**row, **{f: override.get(f) for f in fields}} if override else row)
    return merged


def current_usage(company_id: Optional[str]) -> Dict[str, int]:
    if not company_id:
        return {key: 0 for key in USAGE_SOURCES}
    usage = {}
    for key, (table, extra) in USAGE_SOURCES.items():
        usage[key] = db.count_rows(table, {'company_id': f'eq.{company_id}', **extra})
    return usage


def load_company_plan(user_id: str, company_id: Optional[str], is_admin: bool) -> Dict[str, Any]:
    """Effective plan, limits, features and usage for the caller's company."""
    subscription_owner = user_id
    if not is_admin and company_id:
        subscription_owner = find_company_admin_id(company_id) or user_id

    subscription = db.select_one('subscriptions', {'user_id': f'eq.{subscription_owner}'})
    result = {
        'subscription': subscription,
        'plan': None,
        'limits': [],
        'features': [],
        'usage': current_usage(company_id),
    }
    if not subscription:
        return result

    plan = get_plan(subscription.get('plan'))
    if not plan:
        return result

    limits = db.select_rows('plan_limits', {'plan_id': f"eq.{plan['id']}"})
    features = db.select_rows('plan_features', {'plan_id': f"eq.{plan['id']}"})

    if company_id:
        custom_limits = db.select_rows('company_custom_limits', {'company_id': f'eq.{company_id}'})
        custom_features = db.select_rows('company_custom_features', {'company_id': f'eq.{company_id}'})
        limits = _apply_overrides(limits, custom_limits, 'limit_key', ['limit_value', 'is_unlimited'])
        features = _apply_overrides(features, custom_features, 'feature_key', ['is_enabled'])

    result.update({'plan': plan, 'limits': limits, 'features': features})
    return result


def check_limit(company_plan: Dict[str, Any], limit_key: str, is_master_admin: bool = False) -> Dict[str, Any]:
    if is_master_admin:
        return {'allowed': True, 'current': 0, 'limit': None, 'isUnlimited': True}

    current = company_plan['usage'].get(limit_key, 0)
    limit = next((l for l in company_plan['limits'] if l['limit_key'] == limit_key), None)
    if not limit:
        return {'allowed': True, 'current': 0, 'limit': None, 'isUnlimited': True}
    if limit.get('is_unlimited'):
        return {'allowed': True, 'current': current, 'limit': None, 'isUnlimited': True}

    limit_value = limit.get('limit_value') or 0
    return {'allowed': current < limit_value, 'current': current, 'limit': limit.get('limit_value'),
            'isUnlimited': False}


def has_feature(company_plan: Dict[str, Any], feature_key: str, is_master_admin: bool = False) -> bool:
    if is_master_admin:
        return True
    feature = next((f for f in company_plan['features'] if f['feature_key'] == feature_key), None)
    return bool(feature and feature.get('is_enabled'))


def enforce_limit(caller: Dict[str, Any], limit_key: str) -> Optional[Dict[str, Any]]:
    """None when the caller may add one more of limit_key, else the failed check."""
    if caller['is_master_admin']:
        return None
    company_plan = load_company_plan(caller['user_id'], caller['company_id'], caller['is_admin'])
    check = check_limit(company_plan, limit_key)
    if check['allowed']:
        return None
    logger.info(f"Plan limit reached for company {caller['company_id']}: {limit_key} "
                f"{check['current']}/{check['limit']}")
    return check

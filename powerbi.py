"""
Power BI REST API client.

Authenticates as a Power BI master user through Azure AD's resource-owner
password flow and wraps the handful of endpoints the service needs: report
lookup, embed tokens, dataset refreshes, DAX queries and PNG export.
"""

import time
import logging
from dataclasses import dataclass
from typing import Dict, Any, Optional, List

import requests

logger = logging.getLogger(__name__)

POWERBI_API_BASE = 'https://api.powerbi.com/v1.0/myorg'
POWERBI_SCOPE = 'https://analysis.windows.net/powerbi/api/.default'
AZURE_TOKEN_URL = 'https://login.microsoftonline.com/{tenant_id}/oauth2/v2.0/token'

TIMEOUT = (5, 60)

EXPORT_POLL_INTERVAL = 5  # seconds
EXPORT_MAX_ATTEMPTS = 60

# Generic user-facing messages; vendor error bodies stay in the logs
USER_ERROR_MESSAGES = {
    'auth_failed': 'Falha na autenticação. Verifique suas credenciais do Power BI.',
    'resource_not_found': 'Recurso não encontrado. Verifique as configurações do dashboard.',
    'permission_denied': 'Sem permissão para acessar este recurso.',
    'embed_error': 'Erro ao gerar visualização. Verifique as permissões do workspace.',
    'refresh_in_progress': 'Atualização já em andamento ou limite atingido. Tente novamente mais tarde.',
    'service_error': 'Erro ao processar solicitação. Tente novamente mais tarde.',
    'credentials_missing': 'Credenciais não configuradas. Configure na página de Credenciais.',
}

REFRESH_ERROR_MESSAGES = {
    **USER_ERROR_MESSAGES,
    'permission_denied': 'Você não tem permissão para atualizar este dashboard.',
    'credentials_missing': 'Credenciais não configuradas para este dashboard.',
}


@dataclass
class PowerBICredential:
    client_id: str
    client_secret: str
    tenant_id: str
    username: str
    password: str

    def is_complete(self) -> bool:
        return all([self.client_id, self.client_secret, self.tenant_id, self.username, self.password])


@dataclass
class EmbedInfo:
    embed_url: str
    embed_token: str
    expiration: str


class PowerBIError(Exception):
    """A Power BI failure tagged with the user-facing category it maps to."""

    def __init__(self, category: str, detail: str = ''):
        super().__init__(detail or category)
        self.category = category
        self.detail = detail

    def user_message(self, messages: Optional[Dict[str, str]] = None) -> str:
        messages = messages or USER_ERROR_MESSAGES
        return messages.get(self.category, messages['service_error'])


def categorize_error(message: str) -> str:
    """Map a free-form error message to a user-facing category."""
    lower = (message or '').lower()

    if 'authentication' in lower or 'token' in lower or 'azure' in lower:
        return 'auth_failed'
    if 'not found' in lower or '404' in lower:
        return 'resource_not_found'
    if any(word in lower for word in ('permission', 'permissão', 'denied', 'unauthorized', '403')):
        return 'permission_denied'
    if any(word in lower for word in ('in progress', 'andamento', 'limite')):
        return 'refresh_in_progress'
    if 'embed' in lower or 'workspace' in lower or 'report' in lower:
        return 'embed_error'
    if 'credencial' in lower or 'credential' in lower:
        return 'credentials_missing'
    return 'service_error'


def _auth_headers(access_token: str) -> Dict[str, str]:
    return {
        'Authorization': f'Bearer {access_token}',
        'Content-Type': 'application/json'
    }


def get_access_token(credential: PowerBICredential) -> str:
    """Obtain an Azure AD access token for the Power BI API."""
    response = requests.post(
        AZURE_TOKEN_URL.format(tenant_id=credential.tenant_id),
        data={
            'grant_type': 'password',
            'client_id': credential.client_id,
            'client_secret': credential.client_secret,
            'scope': POWERBI_SCOPE,
            'username': credential.username,
            'password': credential.password,
        },
        timeout=TIMEOUT
    )

    if not response.ok:
        logger.error(f"Azure AD token request failed ({response.status_code}): {response.text[:500]}")
        raise PowerBIError('auth_failed', f'Azure AD authentication failed: HTTP {response.status_code}')

    return response.json()['access_token']


def get_report(access_token: str, workspace_id: str, report_id: str) -> Dict[str, Any]:
    response = requests.get(
        f"{POWERBI_API_BASE}/groups/{workspace_id}/reports/{report_id}",
        headers=_auth_headers(access_token),
        timeout=TIMEOUT
    )

    if not response.ok:
        logger.error(f"Report lookup failed for {report_id} ({response.status_code}): {response.text[:500]}")
        category = 'resource_not_found' if response.status_code in (400, 404) else 'embed_error'
        raise PowerBIError(category, f'Report lookup failed: HTTP {response.status_code}')

    return response.json()


def generate_embed_token(access_token: str, workspace_id: str, report_id: str) -> EmbedInfo:
    """Fetch the report's embed URL and a view-only embed token for it."""
    report = get_report(access_token, workspace_id, report_id)

    response = requests.post(
        f"{POWERBI_API_BASE}/groups/{workspace_id}/reports/{report_id}/GenerateToken",
        headers=_auth_headers(access_token),
        json={'accessLevel': 'View'},
        timeout=TIMEOUT
    )

    if not response.ok:
        logger.error(f"GenerateToken failed for {report_id} ({response.status_code}): {response.text[:500]}")
        category = 'permission_denied' if response.status_code in (401, 403) else 'embed_error'
        raise PowerBIError(category, f'Embed token generation failed: HTTP {response.status_code}')

    token_data = response.json()
    return EmbedInfo(
        embed_url=report.get('embedUrl', ''),
        embed_token=token_data['token'],
        expiration=token_data.get('expiration', ''),
    )


def get_dataset_id(access_token: str, workspace_id: str, report_id: str) -> str:
    dataset_id = get_report(access_token, workspace_id, report_id).get('datasetId')
    if not dataset_id:
        raise PowerBIError('resource_not_found', f'Report {report_id} has no dataset')
    return dataset_id


def trigger_refresh(access_token: str, workspace_id: str, dataset_id: str) -> None:
    response = requests.post(
        f"{POWERBI_API_BASE}/groups/{workspace_id}/datasets/{dataset_id}/refreshes",
        headers=_auth_headers(access_token),
        json={'notifyOption': 'NoNotification'},
        timeout=TIMEOUT
    )

    if response.status_code in (200, 202):
        return

    logger.error(f"Refresh request failed for dataset {dataset_id} ({response.status_code}): {response.text[:500]}")
    if response.status_code == 400:
        raise PowerBIError('refresh_in_progress', 'Refresh already in progress or limit reached')
    if response.status_code in (401, 403):
        raise PowerBIError('permission_denied', f'Refresh denied: HTTP {response.status_code}')
    if response.status_code == 404:
        raise PowerBIError('resource_not_found', 'Dataset not found')
    raise PowerBIError('service_error', f'Refresh failed: HTTP {response.status_code}')


def get_refresh_history(access_token: str, workspace_id: str, dataset_id: str, top: int = 20) -> List[Dict[str, Any]]:
    response = requests.get(
        f"{POWERBI_API_BASE}/groups/{workspace_id}/datasets/{dataset_id}/refreshes",
        params={'$top': top},
        headers=_auth_headers(access_token),
        timeout=TIMEOUT
    )

    if not response.ok:
        logger.error(f"Refresh history failed for dataset {dataset_id} ({response.status_code})")
        raise PowerBIError(categorize_error(f'HTTP {response.status_code}'),
                           f'Refresh history failed: HTTP {response.status_code}')

    return response.json().get('value', [])


def execute_dax(access_token: str, dataset_id: str, query: str) -> List[Dict[str, Any]]:
    """Run a DAX query and return the first table's rows."""
    response = requests.post(
        f"{POWERBI_API_BASE}/datasets/{dataset_id}/executeQueries",
        headers=_auth_headers(access_token),
        json={
            'queries': [{'query': query}],
            'serializerSettings': {'includeNulls': True},
        },
        timeout=TIMEOUT
    )

    if not response.ok:
        logger.error(f"DAX query failed on dataset {dataset_id} ({response.status_code}): {response.text[:500]}")
        raise PowerBIError('service_error', f'DAX query failed: HTTP {response.status_code}')

    results = response.json().get('results') or [{}]
    tables = results[0].get('tables') or [{}]
    return tables[0].get('rows', [])


def export_report_png(access_token: str, workspace_id: str, report_id: str, page_name: Optional[str] = None,
                      poll_interval: float = EXPORT_POLL_INTERVAL,
                      max_attempts: int = EXPORT_MAX_ATTEMPTS) -> bytes:
    """Start an export-to-file job, poll it to completion, and download the PNG."""
    report_url = f"{POWERBI_API_BASE}/groups/{workspace_id}/reports/{report_id}"
    headers = _auth_headers(access_token)

    body = {'format': 'PNG'}
    if page_name:
        body['powerBIReportConfiguration'] = {'pages': [{'pageName': page_name}]}

    response = requests.post(f"{report_url}/ExportTo", headers=headers, json=body, timeout=TIMEOUT)
    if not response.ok:
        logger.error(f"ExportTo failed for {report_id} ({response.status_code}): {response.text[:500]}")
        raise PowerBIError('service_error', f'Export request failed: HTTP {response.status_code}')

    export_id = response.json()['id']
    logger.info(f"Export {export_id} started for report {report_id}")

    for attempt in range(max_attempts):
        time.sleep(poll_interval)

        status_response = requests.get(f"{report_url}/exports/{export_id}", headers=headers, timeout=TIMEOUT)
        if not status_response.ok:
            raise PowerBIError('service_error', f'Export status failed: HTTP {status_response.status_code}')

        status = status_response.json().get('status')
        logger.info(f"Export {export_id} status: {status} (attempt {attempt + 1})")

        if status == 'Succeeded':
            file_response = requests.get(f"{report_url}/exports/{export_id}/file", headers=headers, timeout=TIMEOUT)
            if not file_response.ok:
                raise PowerBIError('service_error', f'Export download failed: HTTP {file_response.status_code}')
            return file_response.content

        if status == 'Failed':
            raise PowerBIError('service_error', 'Export failed')

    raise PowerBIError('service_error', 'Export timed out')

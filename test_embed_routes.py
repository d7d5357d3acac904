import json
from datetime import datetime, timedelta, timezone

import pytest

import ai_gateway
import embed_routes
import powerbi
from conftest import bearer, CRON_HEADERS
from powerbi import PowerBICredential, EmbedInfo, PowerBIError

NOW = datetime(2025, 6, 2, 12, 0, tzinfo=timezone.utc)
CREDENTIAL = PowerBICredential('client', 'secret', 'tenant', 'bi@acme.com', 'pw')


@pytest.fixture
def powerbi_stub(monkeypatch):
    calls = []
    monkeypatch.setattr(embed_routes, 'load_powerbi_credential',
                        lambda credential_id: CREDENTIAL if credential_id == 'cred-1' else None)
    monkeypatch.setattr(powerbi, 'get_access_token', lambda credential: 'aad-token')
    monkeypatch.setattr(powerbi, 'generate_embed_token',
                        lambda token, ws, rep: EmbedInfo('https://embed/' + rep, 'embed-token', '2025-06-02T13:00:00Z'))
    monkeypatch.setattr(powerbi, 'get_dataset_id', lambda token, ws, rep: 'ds-resolved')
    monkeypatch.setattr(powerbi, 'trigger_refresh', lambda token, ws, ds: calls.append(('refresh', ds)))
    monkeypatch.setattr(embed_routes, 'utc_now', lambda: NOW)
    return calls


@pytest.fixture
def dashboard(tenants):
    return tenants.add('dashboards', id='d1', name='Vendas', workspace_id='ws', dashboard_id='rep',
                       report_section='ReportSection1', credential_id='cred-1', owner_id='u-admin',
                       company_id='c1', embed_type='workspace_id', dataset_id=None)


class TestEmbed:
    def test_requires_login(self, client, dashboard):
        response = client.post('/api/powerbi/embed', json={'dashboardId': 'd1'})
        assert response.status_code == 401

    def test_owner_gets_token(self, client, dashboard, powerbi_stub):
        response = client.post('/api/powerbi/embed', json={'dashboardId': 'd1'}, headers=bearer('admin-token'))
        body = response.get_json()
        assert response.status_code == 200
        assert body['embedToken'] == 'embed-token'
        assert body['embedUrl'] == 'https://embed/rep'
        assert body['reportSection'] == 'ReportSection1'

    def test_user_without_access_is_denied(self, client, dashboard, powerbi_stub):
        response = client.post('/api/powerbi/embed', json={'dashboardId': 'd1'}, headers=bearer('user-token'))
        assert response.status_code == 400
        assert response.get_json()['error'] == powerbi.USER_ERROR_MESSAGES['permission_denied']

    def test_group_grant_gives_access(self, client, tenants, dashboard, powerbi_stub):
        tenants.add('user_group_members', group_id='g1', user_id='u-user')
        tenants.add('group_dashboard_access', group_id='g1', dashboard_id='d1')
        response = client.post('/api/powerbi/embed', json={'dashboardId': 'd1'}, headers=bearer('user-token'))
        assert response.get_json()['success'] is True

    def test_master_admin_sees_everything(self, client, dashboard, powerbi_stub):
        response = client.post('/api/powerbi/embed', json={'dashboardId': 'd1'}, headers=bearer('master-token'))
        assert response.get_json()['success'] is True

    def test_missing_credential(self, client, tenants, dashboard, powerbi_stub):
        tenants.rows('dashboards', id='d1')[0]['credential_id'] = None
        response = client.post('/api/powerbi/embed', json={'dashboardId': 'd1'}, headers=bearer('admin-token'))
        assert response.get_json()['error'] == powerbi.USER_ERROR_MESSAGES['credentials_missing']

    def test_credential_without_master_user(self, client, dashboard, powerbi_stub, monkeypatch):
        monkeypatch.setattr(embed_routes, 'load_powerbi_credential',
                            lambda credential_id: PowerBICredential('client', 'secret', 'tenant', '', ''))
        response = client.post('/api/powerbi/embed', json={'dashboardId': 'd1'}, headers=bearer('admin-token'))
        assert response.get_json()['error'] == powerbi.USER_ERROR_MESSAGES['credentials_missing']

    def test_vendor_error_text_is_not_leaked(self, client, dashboard, powerbi_stub, monkeypatch):
        def explode(token, ws, rep):
            raise RuntimeError('Power BI said: internal tenant xyz missing')
        monkeypatch.setattr(powerbi, 'generate_embed_token', explode)

        response = client.post('/api/powerbi/embed', json={'dashboardId': 'd1'}, headers=bearer('admin-token'))

        assert 'xyz' not in response.get_json()['error']


class TestRefresh:
    def test_requires_refresh_permission(self, client, dashboard, powerbi_stub):
        response = client.post('/api/powerbi/refresh', json={'dashboardId': 'd1'}, headers=bearer('user-token'))
        assert response.status_code == 400
        assert response.get_json()['error'] == 'Você não tem permissão para atualizar este dashboard.'
        assert powerbi_stub == []

    def test_refresh_records_history_and_caches_dataset(self, client, tenants, dashboard, powerbi_stub):
        tenants.add('user_dashboard_refresh_permissions', user_id='u-user', dashboard_id='d1')

        response = client.post('/api/powerbi/refresh', json={'dashboardId': 'd1'}, headers=bearer('user-token'))

        assert response.get_json() == {'success': True, 'message': 'Atualização iniciada com sucesso'}
        assert powerbi_stub == [('refresh', 'ds-resolved')]
        assert tenants.rows('dashboards', id='d1')[0]['dataset_id'] == 'ds-resolved'
        history = tenants.rows('dashboard_refresh_history', dashboard_id='d1')
        assert history[0]['status'] == 'completed'
        assert history[0]['completed_at'] == NOW.isoformat()

    def test_refresh_in_progress(self, client, tenants, dashboard, powerbi_stub, monkeypatch):
        tenants.add('user_dashboard_refresh_permissions', user_id='u-user', dashboard_id='d1')

        def busy(token, ws, ds):
            raise PowerBIError('refresh_in_progress', 'HTTP 400')
        monkeypatch.setattr(powerbi, 'trigger_refresh', busy)

        response = client.post('/api/powerbi/refresh', json={'dashboardId': 'd1'}, headers=bearer('user-token'))

        assert response.status_code == 400
        assert 'andamento' in response.get_json()['error']
        history = tenants.rows('dashboard_refresh_history', dashboard_id='d1')[0]
        assert history['status'] == 'failed'
        assert history['error_message'] == 'Falha na atualização'


class TestRefreshHistorySync:
    def test_requires_cron_secret(self, client, tenants):
        response = client.post('/api/powerbi/refresh-history/sync', headers={'X-Cron-Secret': 'wrong'})
        assert response.status_code == 403

    def test_imports_recent_refreshes_once(self, client, tenants, dashboard, powerbi_stub, monkeypatch):
        tenants.rows('dashboards', id='d1')[0]['dataset_id'] = 'ds-1'
        tenants.add('dashboard_refresh_history', dashboard_id='d1', started_at='2025-06-02T08:00:00+00:00',
                    status='completed')
        tenants.add('dashboard_refresh_history', dashboard_id='d1', started_at='2025-05-20T08:00:00+00:00',
                    status='completed')
        refreshes = [
            {'startTime': '2025-06-02T08:00:00+00:00', 'endTime': '2025-06-02T08:05:00+00:00', 'status': 'Completed'},
            {'startTime': '2025-06-02T10:00:00+00:00', 'endTime': '2025-06-02T10:01:00+00:00', 'status': 'Failed',
             'serviceExceptionJson': json.dumps({'errorDescription': 'Gateway offline'})},
            {'startTime': '2025-06-02T11:30:00+00:00', 'status': 'Unknown'},
            {'startTime': '2025-05-01T10:00:00+00:00', 'status': 'Completed'},
        ]
        monkeypatch.setattr(powerbi, 'get_refresh_history', lambda token, ws, ds: refreshes)

        response = client.post('/api/powerbi/refresh-history/sync', headers=CRON_HEADERS)

        assert response.get_json() == {'success': True, 'synced': 2, 'errors': 0}
        history = {r['started_at']: r for r in tenants.rows('dashboard_refresh_history')}
        assert history['2025-06-02T10:00:00+00:00']['status'] == 'failed'
        assert history['2025-06-02T10:00:00+00:00']['error_message'] == 'Gateway offline'
        assert history['2025-06-02T11:30:00+00:00']['status'] == 'pending'
        assert '2025-05-20T08:00:00+00:00' not in history

    def test_unknown_credential_is_skipped(self, client, tenants, powerbi_stub):
        tenants.add('dashboards', id='d9', workspace_id='ws', dashboard_id='rep', credential_id='cred-missing',
                    embed_type='workspace_id', owner_id='u-admin')

        response = client.post('/api/powerbi/refresh-history/sync', headers=CRON_HEADERS)

        assert response.get_json() == {'success': True, 'synced': 0, 'errors': 0}

    def test_token_failure_counts_as_error(self, client, tenants, dashboard, powerbi_stub, monkeypatch):
        def denied(credential):
            raise PowerBIError('auth_failed', 'HTTP 401')
        monkeypatch.setattr(powerbi, 'get_access_token', denied)

        response = client.post('/api/powerbi/refresh-history/sync', headers=CRON_HEADERS)

        assert response.get_json()['errors'] == 1


def test_refresh_error_message_fallbacks():
    assert embed_routes.refresh_error_message({'status': 'Completed'}) is None
    assert embed_routes.refresh_error_message({'status': 'Failed', 'serviceExceptionJson': '{'}) == 'Falha na atualização'
    assert embed_routes.refresh_error_message(
        {'status': 'Failed', 'serviceExceptionJson': json.dumps({'message': 'timeout'})}) == 'timeout'


class TestDatasetChat:
    @pytest.fixture
    def ai_stub(self, monkeypatch):
        answers = iter(['```\nEVALUATE ROW("Total", 10)\n```', 'O total é 10.'])
        monkeypatch.setattr(ai_gateway, 'ai_configured', lambda: True)
        monkeypatch.setattr(ai_gateway, 'chat_completion', lambda messages, **kwargs: next(answers))
        monkeypatch.setattr(powerbi, 'execute_dax', lambda token, ds, query: [{'[Total]': 10}])

    def test_answers_question(self, client, tenants, dashboard, powerbi_stub, ai_stub):
        tenants.rows('dashboards', id='d1')[0]['dataset_id'] = 'ds-1'

        response = client.post('/api/powerbi/chat', json={'dashboardId': 'd1', 'question': 'Qual o total?'},
                               headers=bearer('admin-token'))

        assert response.get_json() == {
            'success': True,
            'answer': 'O total é 10.',
            'daxQuery': 'EVALUATE ROW("Total", 10)',
            'rawData': [{'[Total]': 10}],
        }

    def test_requires_dataset(self, client, dashboard, powerbi_stub, ai_stub):
        response = client.post('/api/powerbi/chat', json={'dashboardId': 'd1', 'question': 'Qual o total?'},
                               headers=bearer('admin-token'))
        assert response.status_code == 400

    def test_missing_fields(self, client, tenants):
        response = client.post('/api/powerbi/chat', json={'dashboardId': 'd1'}, headers=bearer('admin-token'))
        assert response.status_code == 400

    def test_rate_limited(self, client, tenants, dashboard, powerbi_stub, monkeypatch):
        tenants.rows('dashboards', id='d1')[0]['dataset_id'] = 'ds-1'

        def limited(messages, **kwargs):
            raise ai_gateway.AIRateLimitError('429')
        monkeypatch.setattr(ai_gateway, 'ai_configured', lambda: True)
        monkeypatch.setattr(ai_gateway, 'chat_completion', limited)

        response = client.post('/api/powerbi/chat', json={'dashboardId': 'd1', 'question': 'Qual o total?'},
                               headers=bearer('admin-token'))
        assert response.status_code == 429


class TestAccessLogs:
    def test_logs_once_per_day(self, client, tenants, powerbi_stub):
        headers = {**bearer('user-token'), 'User-Agent': 'pytest-browser'}
        first = client.post('/api/access-logs', json={'dashboardId': 'd1'}, headers=headers)
        second = client.post('/api/access-logs', json={'dashboardId': 'd1'}, headers=headers)

        assert first.get_json() == {'logged': True}
        assert second.get_json() == {'logged': False}
        logs = tenants.rows('dashboard_access_logs')
        assert len(logs) == 1
        assert logs[0]['company_id'] == 'c1'
        assert logs[0]['user_agent'] == 'pytest-browser'

    def test_yesterday_does_not_count(self, client, tenants, powerbi_stub):
        tenants.add('dashboard_access_logs', user_id='u-user', dashboard_id='d1',
                    accessed_at=(NOW - timedelta(days=1)).isoformat())
        response = client.post('/api/access-logs', json={'dashboardId': 'd1'}, headers=bearer('user-token'))
        assert response.get_json() == {'logged': True}

    def test_cleanup_removes_old_logs(self, client, tenants, powerbi_stub):
        tenants.add('dashboard_access_logs', user_id='u-user', dashboard_id='d1',
                    accessed_at='2024-05-01T00:00:00+00:00')
        tenants.add('dashboard_access_logs', user_id='u-user', dashboard_id='d1',
                    accessed_at='2024-06-02T00:00:00+00:00')

        response = client.post('/api/access-logs/cleanup', headers=CRON_HEADERS)

        body = response.get_json()
        assert body['deleted_count'] == 1
        assert body['cutoff_date'] == '2024-06-01T12:00:00+00:00'
        assert len(tenants.rows('dashboard_access_logs')) == 1

    def test_cutoff_on_leap_day(self):
        leap = datetime(2024, 2, 29, 3, 0, tzinfo=timezone.utc)
        assert embed_routes.access_log_cutoff(leap) == datetime(2023, 2, 28, 3, 0, tzinfo=timezone.utc)

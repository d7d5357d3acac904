from datetime import datetime, timezone

import pytest

import mailer
import powerbi
import report_routes
from conftest import bearer, CRON_HEADERS
from powerbi import PowerBICredential

NOW = datetime(2025, 6, 2, 8, 2, tzinfo=timezone.utc)


@pytest.fixture
def outbox(monkeypatch):
    sent = []

    def fake_send(recipients, subject, dashboard_name, dashboard_link, direct_link, image_png=None,
                  primary_color=mailer.DEFAULT_PRIMARY_COLOR, company_name=mailer.DEFAULT_COMPANY_NAME):
        sent.append({
            'to': [r['email'] for r in recipients],
            'subject': subject,
            'dashboard_link': dashboard_link,
            'direct_link': direct_link,
            'image': image_png,
            'primary_color': primary_color,
            'company_name': company_name,
        })
        return len(recipients)

    monkeypatch.setattr(mailer, 'send_report_email', fake_send)
    monkeypatch.setattr(report_routes, 'utc_now', lambda: NOW)
    return sent


@pytest.fixture
def export_stub(monkeypatch):
    monkeypatch.setattr(report_routes, 'load_powerbi_credential',
                        lambda credential_id: PowerBICredential('c', 's', 't', 'u', 'p'))
    monkeypatch.setattr(powerbi, 'get_access_token', lambda credential: 'aad')
    monkeypatch.setattr(powerbi, 'export_report_png', lambda token, ws, rep, page: b'PNG')


@pytest.fixture
def subscription(tenants):
    tenants.add('dashboards', id='d1', name='Vendas', workspace_id='ws', dashboard_id='rep',
                embed_type='workspace_id', credential_id='cred-1', company_id='c1', report_section=None,
                public_link=None)
    row = tenants.add('report_subscriptions', id='s1', name='Diário', dashboard_id='d1', company_id='c1',
                      frequency='daily', schedule_time='08:00:00', is_active=True, last_sent_at=None,
                      report_page=None)
    tenants.add('subscription_recipients', subscription_id='s1', email='ana@acme.com', name='Ana')
    tenants.add('subscription_recipients', subscription_id='s1', email='bia@acme.com', name=None)
    return row


class TestDelivery:
    def test_sends_with_image_and_branding(self, client, tenants, subscription, outbox, export_stub):
        result = report_routes.deliver_subscription('s1')

        assert result == {'success': True, 'message': 'Relatório enviado para 2 destinatário(s)',
                          'exportedAsImage': True}
        mail = outbox[0]
        assert mail['subject'] == '📊 Relatório: Vendas'
        assert mail['image'] == b'PNG'
        assert mail['primary_color'] == '#112233'
        assert mail['company_name'] == 'Acme'
        assert mail['direct_link'] == 'https://app.powerbi.com/groups/ws/reports/rep'

        log = tenants.rows('subscription_logs', subscription_id='s1')[0]
        assert log['status'] == 'sent_with_image'
        assert log['recipients_count'] == 2
        stored = tenants.rows('report_subscriptions', id='s1')[0]
        assert stored['last_sent_at'] == NOW.isoformat()
        assert stored['next_send_at'] == '2025-06-03T08:00:00+00:00'

    def test_export_failure_falls_back_to_link(self, client, tenants, subscription, outbox, export_stub,
                                               monkeypatch):
        def broken(token, ws, rep, page):
            raise powerbi.PowerBIError('service_error', 'Export timed out')
        monkeypatch.setattr(powerbi, 'export_report_png', broken)

        result = report_routes.deliver_subscription('s1')

        assert result['exportedAsImage'] is False
        assert outbox[0]['image'] is None
        assert tenants.rows('subscription_logs')[0]['status'] == 'sent_with_link'

    def test_public_link_dashboard_is_not_exported(self, client, tenants, subscription, outbox, export_stub):
        dashboard = tenants.rows('dashboards', id='d1')[0]
        dashboard.update(embed_type='public_link', public_link='https://app.powerbi.com/view?r=abc')

        report_routes.deliver_subscription('s1')

        assert outbox[0]['image'] is None
        assert outbox[0]['direct_link'] == 'https://app.powerbi.com/view?r=abc'

    def test_no_recipients_marks_log_failed(self, client, tenants, subscription, outbox):
        tenants.tables['subscription_recipients'] = []

        with pytest.raises(report_routes.DeliveryError, match='No recipients configured'):
            report_routes.deliver_subscription('s1')

        log = tenants.rows('subscription_logs')[0]
        assert log['status'] == 'failed'
        assert log['error_message'] == 'No recipients configured'
        assert outbox == []

    def test_nobody_reached_is_a_failure(self, client, tenants, subscription, outbox, export_stub, monkeypatch):
        monkeypatch.setattr(mailer, 'send_report_email', lambda *args, **kwargs: 0)
        with pytest.raises(report_routes.DeliveryError):
            report_routes.deliver_subscription('s1')
        assert tenants.rows('report_subscriptions', id='s1')[0]['last_sent_at'] is None


class TestExportRoute:
    def test_cron_secret(self, client, subscription, outbox, export_stub):
        response = client.post('/api/reports/export', json={'subscriptionId': 's1'}, headers=CRON_HEADERS)
        assert response.status_code == 200
        assert response.get_json()['exportedAsImage'] is True

    def test_admin_of_company(self, client, subscription, outbox, export_stub):
        response = client.post('/api/reports/export', json={'subscriptionId': 's1'}, headers=bearer('admin-token'))
        assert response.status_code == 200

    def test_admin_of_other_company(self, client, subscription, outbox, export_stub):
        response = client.post('/api/reports/export', json={'subscriptionId': 's1'}, headers=bearer('other-token'))
        assert response.status_code == 403
        assert outbox == []

    def test_anonymous(self, client, subscription):
        response = client.post('/api/reports/export', json={'subscriptionId': 's1'})
        assert response.status_code == 401

    def test_delivery_error_is_400(self, client, tenants, subscription, outbox):
        tenants.tables['subscription_recipients'] = []
        response = client.post('/api/reports/export', json={'subscriptionId': 's1'}, headers=CRON_HEADERS)
        assert response.status_code == 400


class TestProcess:
    def test_delivers_only_due_subscriptions(self, client, tenants, subscription, outbox, export_stub):
        tenants.add('report_subscriptions', id='s2', name='Tarde', dashboard_id='d1', company_id='c1',
                    frequency='daily', schedule_time='15:00', is_active=True, last_sent_at=None)
        tenants.add('report_subscriptions', id='s3', name='Quebrada', dashboard_id='d1', company_id='c1',
                    frequency='daily', schedule_time='garbage', is_active=True, last_sent_at=None)
        tenants.add('report_subscriptions', id='s4', name='Pausada', dashboard_id='d1', company_id='c1',
                    frequency='daily', schedule_time='08:00', is_active=False, last_sent_at=None)

        response = client.post('/api/reports/process', headers=CRON_HEADERS)

        assert response.get_json() == {'success': True, 'processed': 1, 'results': [{'id': 's1', 'success': True}]}

    def test_failure_reported_per_subscription(self, client, tenants, subscription, outbox):
        tenants.tables['subscription_recipients'] = []
        response = client.post('/api/reports/process', headers=CRON_HEADERS)
        result = response.get_json()['results'][0]
        assert result['success'] is False
        assert result['error'] == 'No recipients configured'

    def test_requires_cron_secret(self, client, tenants):
        response = client.post('/api/reports/process', headers=bearer('admin-token'))
        assert response.status_code == 403


class TestManagement:
    def test_create_subscription(self, client, tenants, outbox):
        tenants.add('dashboards', id='d1', name='Vendas', company_id='c1')

        response = client.post('/api/report-subscriptions', headers=bearer('admin-token'), json={
            'name': 'Semanal',
            'dashboard_id': 'd1',
            'frequency': 'weekly',
            'schedule_time': '09:00',
            'schedule_days_of_week': [1],
            'recipients': ['Ana@Acme.com', 'ana@acme.com', 'not-an-email', {'email': 'bia@acme.com', 'name': 'Bia'}],
        })

        assert response.status_code == 201
        created = response.get_json()['subscription']
        assert created['company_id'] == 'c1'
        assert created['next_send_at'] == '2025-06-02T09:00:00+00:00'
        assert [r['email'] for r in created['recipients']] == ['ana@acme.com', 'bia@acme.com']

    def test_create_rejects_bad_schedule(self, client, tenants):
        tenants.add('dashboards', id='d1', company_id='c1')
        response = client.post('/api/report-subscriptions', headers=bearer('admin-token'), json={
            'name': 'x', 'dashboard_id': 'd1', 'frequency': 'monthly', 'schedule_time': '09:00',
        })
        assert response.status_code == 400
        assert response.get_json()['details']

    def test_plain_user_cannot_manage(self, client, tenants):
        response = client.get('/api/report-subscriptions?dashboardId=d1', headers=bearer('user-token'))
        assert response.status_code == 403

    def test_list_includes_recipients(self, client, subscription):
        response = client.get('/api/report-subscriptions?dashboardId=d1', headers=bearer('admin-token'))
        subscriptions = response.get_json()['subscriptions']
        assert len(subscriptions) == 1
        assert len(subscriptions[0]['recipients']) == 2

    def test_other_company_sees_nothing(self, client, subscription):
        response = client.get('/api/report-subscriptions?dashboardId=d1', headers=bearer('other-token'))
        assert response.get_json()['subscriptions'] == []

    def test_pause_clears_next_send(self, client, tenants, subscription, outbox):
        response = client.patch('/api/report-subscriptions/s1', headers=bearer('admin-token'),
                                json={'is_active': False})
        assert response.get_json()['subscription']['next_send_at'] is None

    def test_delete_removes_children(self, client, tenants, subscription):
        tenants.add('subscription_logs', subscription_id='s1', status='sent_with_link')

        response = client.delete('/api/report-subscriptions/s1', headers=bearer('admin-token'))

        assert response.get_json() == {'success': True}
        assert tenants.rows('report_subscriptions') == []
        assert tenants.rows('subscription_recipients') == []
        assert tenants.rows('subscription_logs') == []

    def test_cannot_touch_other_company(self, client, subscription):
        response = client.delete('/api/report-subscriptions/s1', headers=bearer('other-token'))
        assert response.status_code == 403

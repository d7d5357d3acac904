import pytest

import powerbi
from powerbi import PowerBICredential, PowerBIError, categorize_error, REFRESH_ERROR_MESSAGES


class FakeResponse:
    def __init__(self, status_code=200, payload=None, content=b''):
        self.status_code = status_code
        self._payload = payload or {}
        self.content = content
        self.text = str(payload)

    @property
    def ok(self):
        return 200 <= self.status_code < 300

    def json(self):
        return self._payload


class Recorder:
    """Replays queued responses for requests.get/post and records the calls."""

    def __init__(self, monkeypatch, get=(), post=()):
        self.calls = []
        self.get_responses = list(get)
        self.post_responses = list(post)
        monkeypatch.setattr(powerbi.requests, 'get', self._get)
        monkeypatch.setattr(powerbi.requests, 'post', self._post)
        monkeypatch.setattr(powerbi.time, 'sleep', lambda seconds: None)

    def _get(self, url, **kwargs):
        self.calls.append(('GET', url, kwargs))
        return self.get_responses.pop(0)

    def _post(self, url, **kwargs):
        self.calls.append(('POST', url, kwargs))
        return self.post_responses.pop(0)


CREDENTIAL = PowerBICredential('client', 'secret', 'tenant-1', 'bi@acme.com', 'pw')


@pytest.mark.parametrize('message,category', [
    ('Azure AD authentication failed', 'auth_failed'),
    ('Report not found', 'resource_not_found'),
    ('HTTP 403', 'permission_denied'),
    ('Atualização em andamento', 'refresh_in_progress'),
    ('workspace misconfigured', 'embed_error'),
    ('credencial inválida', 'credentials_missing'),
    ('boom', 'service_error'),
])
def test_categorize_error(message, category):
    assert categorize_error(message) == category


def test_refresh_messages_override_permission_text():
    err = PowerBIError('permission_denied')
    assert err.user_message(REFRESH_ERROR_MESSAGES) == 'Você não tem permissão para atualizar este dashboard.'
    assert PowerBIError('weird').user_message() == powerbi.USER_ERROR_MESSAGES['service_error']


def test_access_token_uses_password_grant(monkeypatch):
    rec = Recorder(monkeypatch, post=[FakeResponse(payload={'access_token': 'aad'})])

    assert powerbi.get_access_token(CREDENTIAL) == 'aad'

    method, url, kwargs = rec.calls[0]
    assert 'tenant-1' in url
    assert kwargs['data']['grant_type'] == 'password'
    assert kwargs['data']['scope'] == powerbi.POWERBI_SCOPE


def test_access_token_failure_is_auth_failed(monkeypatch):
    Recorder(monkeypatch, post=[FakeResponse(401, {'error': 'invalid_grant'})])
    with pytest.raises(PowerBIError) as exc:
        powerbi.get_access_token(CREDENTIAL)
    assert exc.value.category == 'auth_failed'


def test_embed_token(monkeypatch):
    Recorder(monkeypatch,
             get=[FakeResponse(payload={'embedUrl': 'https://embed', 'datasetId': 'ds'})],
             post=[FakeResponse(payload={'token': 'tok', 'expiration': '2025-01-01T00:00:00Z'})])

    embed = powerbi.generate_embed_token('aad', 'ws', 'rep')

    assert embed.embed_url == 'https://embed'
    assert embed.embed_token == 'tok'


def test_embed_token_forbidden(monkeypatch):
    Recorder(monkeypatch, get=[FakeResponse(payload={'embedUrl': 'x'})], post=[FakeResponse(403)])
    with pytest.raises(PowerBIError) as exc:
        powerbi.generate_embed_token('aad', 'ws', 'rep')
    assert exc.value.category == 'permission_denied'


@pytest.mark.parametrize('status,category', [
    (400, 'refresh_in_progress'),
    (401, 'permission_denied'),
    (404, 'resource_not_found'),
    (500, 'service_error'),
])
def test_trigger_refresh_errors(monkeypatch, status, category):
    Recorder(monkeypatch, post=[FakeResponse(status)])
    with pytest.raises(PowerBIError) as exc:
        powerbi.trigger_refresh('aad', 'ws', 'ds')
    assert exc.value.category == category


def test_trigger_refresh_accepted(monkeypatch):
    Recorder(monkeypatch, post=[FakeResponse(202)])
    powerbi.trigger_refresh('aad', 'ws', 'ds')


def test_execute_dax_returns_first_table(monkeypatch):
    rows = [{'[Total]': 10}]
    Recorder(monkeypatch, post=[FakeResponse(payload={'results': [{'tables': [{'rows': rows}]}]})])
    assert powerbi.execute_dax('aad', 'ds', 'EVALUATE ROW("Total", 10)') == rows


def test_export_polls_until_succeeded(monkeypatch):
    rec = Recorder(
        monkeypatch,
        post=[FakeResponse(202, {'id': 'exp-1'})],
        get=[FakeResponse(payload={'status': 'Running'}),
             FakeResponse(payload={'status': 'Succeeded'}),
             FakeResponse(content=b'\x89PNG')],
    )

    assert powerbi.export_report_png('aad', 'ws', 'rep', page_name='ReportSection1') == b'\x89PNG'

    body = rec.calls[0][2]['json']
    assert body['format'] == 'PNG'
    assert body['powerBIReportConfiguration'] == {'pages': [{'pageName': 'ReportSection1'}]}
    assert rec.calls[-1][1].endswith('/exports/exp-1/file')


def test_export_failed(monkeypatch):
    Recorder(monkeypatch, post=[FakeResponse(202, {'id': 'e'})], get=[FakeResponse(payload={'status': 'Failed'})])
    with pytest.raises(PowerBIError, match='Export failed'):
        powerbi.export_report_png('aad', 'ws', 'rep')


def test_export_times_out(monkeypatch):
    Recorder(monkeypatch, post=[FakeResponse(202, {'id': 'e'})],
             get=[FakeResponse(payload={'status': 'Running'})] * 3)
    with pytest.raises(PowerBIError, match='timed out'):
        powerbi.export_report_png('aad', 'ws', 'rep', max_attempts=3)

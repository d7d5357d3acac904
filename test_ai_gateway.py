import pytest
import requests

import ai_gateway


class FakeResponse:
    def __init__(self, status_code, body=None):
        self.status_code = status_code
        self.body = body or {}
        self.ok = status_code < 400
        self.text = str(body)

    def json(self):
        return self.body


def answer(text):
    return FakeResponse(200, {'choices': [{'message': {'content': text}}]})


@pytest.fixture
def gateway(monkeypatch):
    queue = []
    payloads = []
    sleeps = []

    def fake_post(url, headers=None, json=None, timeout=None):
        payloads.append(json)
        item = queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    monkeypatch.setattr(ai_gateway, 'AI_GATEWAY_API_KEY', 'key')
    monkeypatch.setattr(ai_gateway.requests, 'post', fake_post)
    monkeypatch.setattr(ai_gateway.time, 'sleep', sleeps.append)
    return queue, payloads, sleeps


def test_returns_first_choice(gateway):
    queue, payloads, _ = gateway
    queue.append(answer('olá'))

    assert ai_gateway.chat_completion([{'role': 'user', 'content': 'oi'}], temperature=0.3) == 'olá'
    assert payloads[0]['temperature'] == 0.3
    assert 'max_tokens' not in payloads[0]


def test_retries_overloaded_gateway(gateway):
    queue, _, sleeps = gateway
    queue.extend([FakeResponse(503), requests.exceptions.Timeout(), answer('ok')])

    assert ai_gateway.chat_completion([]) == 'ok'
    assert sleeps == [1, 2]


def test_rate_limit_is_not_retried(gateway):
    queue, payloads, _ = gateway
    queue.append(FakeResponse(429))

    with pytest.raises(ai_gateway.AIRateLimitError):
        ai_gateway.chat_completion([])
    assert len(payloads) == 1


def test_client_error(gateway):
    gateway[0].append(FakeResponse(400, {'error': 'bad model'}))
    with pytest.raises(ai_gateway.AIGatewayError, match='400'):
        ai_gateway.chat_completion([])


def test_not_configured(monkeypatch):
    monkeypatch.setattr(ai_gateway, 'AI_GATEWAY_API_KEY', None)
    with pytest.raises(ai_gateway.AIGatewayError):
        ai_gateway.chat_completion([])


def test_parse_fenced_json():
    assert ai_gateway.parse_json_answer('```json\n{"a": 1}\n```') == {'a': 1}
    assert ai_gateway.parse_json_answer('{"a": 1}') == {'a': 1}
    with pytest.raises(ValueError):
        ai_gateway.parse_json_answer('no json here')

"""Tests for the OpenRouter completion client with a stubbed aiohttp session."""

import json
from unittest.mock import AsyncMock, patch

import aiohttp
import pytest

from codeforge.services.generation.api_client import Completion, OpenRouterClient, TokenUsage
from codeforge.services.service_base import CompletionError
from codeforge.utils.circuit_breaker import CircuitBreaker, CircuitBreakerConfig

MODULE = 'codeforge.services.generation.api_client'

OK_BODY = {
    'model': 'p/model',
    'choices': [{'message': {'content': '{"path": "a.html", "content": "x"}'}}],
    'usage': {'prompt_tokens': 10, 'completion_tokens': 5},
}


class FakeResponse:
    def __init__(self, status, body):
        self.status = status
        self._body = body

    async def text(self):
        return self._body if isinstance(self._body, str) else json.dumps(self._body)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    """Replays queued (status, body) pairs or raises queued exceptions."""

    def __init__(self, script):
        self.script = script
        self.requests = []

    def __call__(self, *args, **kwargs):
        return self

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def post(self, url, json=None, headers=None, timeout=None):
        self.requests.append({'url': url, 'json': json, 'headers': headers})
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        return FakeResponse(*item)


@pytest.fixture
def client(settings):
    return OpenRouterClient(settings, max_retries=2)


def run_with(script):
    session = FakeSession(script)
    return session, patch(f'{MODULE}.aiohttp.ClientSession', session), patch(f'{MODULE}.asyncio.sleep', new_callable=AsyncMock)


@pytest.mark.unit
class TestOpenRouterClient:

    @pytest.mark.asyncio
    async def test_successful_completion(self, client):
        session, patch_session, patch_sleep = run_with([(200, OK_BODY)])
        with patch_session, patch_sleep:
            completion = await client.complete([{'role': 'user', 'content': 'hi'}], 'p/model', {'max_tokens': 123, 'reasoning': True})

        assert completion.content.startswith('{"path"')
        assert completion.total_tokens == 15
        payload = session.requests[0]['json']
        assert payload['max_tokens'] == 123
        assert payload['reasoning'] == {'enabled': True}
        assert session.requests[0]['headers']['Authorization'] == 'Bearer test-key'

    @pytest.mark.asyncio
    async def test_retries_retryable_status(self, client):
        session, patch_session, patch_sleep = run_with([(429, {'error': {'message': 'slow down'}}), (200, OK_BODY)])
        with patch_session, patch_sleep as sleep:
            completion = await client.complete([{'role': 'user', 'content': 'hi'}], 'p/model')

        assert completion.model == 'p/model'
        assert len(session.requests) == 2
        sleep.assert_awaited_once_with(2)

    @pytest.mark.asyncio
    async def test_non_retryable_status_raises_at_once(self, client):
        session, patch_session, patch_sleep = run_with([(400, {'error': {'message': 'bad model'}})])
        with patch_session, patch_sleep:
            with pytest.raises(CompletionError) as exc_info:
                await client.complete([{'role': 'user', 'content': 'hi'}], 'p/model')

        assert exc_info.value.status_code == 400
        assert exc_info.value.transient is False
        assert len(session.requests) == 1
        assert client.breaker.get_status()['failure_count'] == 0

    @pytest.mark.asyncio
    async def test_network_errors_exhaust_retries(self, client):
        script = [aiohttp.ClientConnectionError("reset")] * 3
        session, patch_session, patch_sleep = run_with(script)
        with patch_session, patch_sleep:
            with pytest.raises(CompletionError) as exc_info:
                await client.complete([{'role': 'user', 'content': 'hi'}], 'p/model')

        assert exc_info.value.transient is True
        assert len(session.requests) == 3
        assert client.breaker.get_status()['failure_count'] == 1

    @pytest.mark.asyncio
    async def test_empty_content_is_transient(self, client):
        body = {'choices': [{'message': {'content': '  '}}]}
        session, patch_session, patch_sleep = run_with([(200, body)])
        with patch_session, patch_sleep:
            with pytest.raises(CompletionError) as exc_info:
                await client.complete([{'role': 'user', 'content': 'hi'}], 'p/model')

        assert exc_info.value.transient is True

    @pytest.mark.asyncio
    async def test_missing_api_key(self, settings):
        settings.openrouter_api_key = ''
        with pytest.raises(CompletionError) as exc_info:
            await OpenRouterClient(settings).complete([], 'p/model')
        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_open_breaker_short_circuits(self, settings):
        breaker = CircuitBreaker('test', CircuitBreakerConfig(failure_threshold=1))
        breaker.record_failure()
        client = OpenRouterClient(settings, breaker=breaker)

        session, patch_session, patch_sleep = run_with([])
        with patch_session, patch_sleep:
            with pytest.raises(CompletionError) as exc_info:
                await client.complete([{'role': 'user', 'content': 'hi'}], 'p/model')

        assert exc_info.value.transient is True
        assert session.requests == []


@pytest.mark.unit
class TestTokenUsage:

    def test_from_api_computes_total(self):
        usage = TokenUsage.from_api({'prompt_tokens': 3, 'completion_tokens': 4})
        assert usage.total_tokens == 7

    def test_missing_usage(self):
        assert TokenUsage.from_api(None) is None
        assert Completion('x').total_tokens == 0

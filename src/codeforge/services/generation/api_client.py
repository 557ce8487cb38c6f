"""API Client for OpenRouter
============================

Minimal async client for OpenRouter chat completions.

Features:
- Async HTTP calls with aiohttp
- Retry with exponential backoff on 408/409/429/5xx and network errors
- Circuit breaker integration (one breaker per client)
- Failures raised as CompletionError, flagged transient where a later retry
  may succeed
"""

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

import aiohttp

from codeforge.config.settings import Settings, get_settings
from codeforge.services.service_base import CompletionError
from codeforge.utils.circuit_breaker import CircuitBreaker, CircuitBreakerConfig

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = (408, 409, 429, 500, 502, 503, 504)


@dataclass
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_api(cls, data: Optional[Dict[str, Any]]) -> Optional['TokenUsage']:
        if not data:
            return None
        prompt = int(data.get('prompt_tokens') or 0)
        completion = int(data.get('completion_tokens') or 0)
        total = int(data.get('total_tokens') or (prompt + completion))
        return cls(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)


@dataclass
class Completion:
    """Text content of a completion plus reported usage, if any."""
    content: str
    usage: Optional[TokenUsage] = None
    model: Optional[str] = None

    @property
    def total_tokens(self) -> int:
        return self.usage.total_tokens if self.usage else 0


class CompletionClient(Protocol):
    """Anything that can run a chat completion."""

    async def complete(
        self,
        messages: List[Dict[str, str]],
        model: str,
        options: Optional[Dict[str, Any]] = None,
    ) -> Completion:
        ...


class OpenRouterClient:
    """Client for OpenRouter chat completions.

    Usage:
        client = OpenRouterClient()
        completion = await client.complete(
            [{"role": "user", "content": "Hello"}],
            "minimax/minimax-m2.1",
            {"max_tokens": 4000},
        )
    """

    API_URL = "https://openrouter.ai/api/v1/chat/completions"

    def __init__(
        self,
        settings: Optional[Settings] = None,
        breaker: Optional[CircuitBreaker] = None,
        max_retries: int = 2,
        timeout: int = 300,
    ):
        settings = settings or get_settings()
        self.api_key = settings.openrouter_api_key
        self.site_url = settings.openrouter_site_url
        self.site_name = settings.openrouter_site_name
        self.max_retries = max_retries
        self.timeout = timeout
        self.breaker = breaker or CircuitBreaker(
            name="openrouter",
            config=CircuitBreakerConfig(
                failure_threshold=3,  # Open after 3 failures
                recovery_timeout=60.0,  # Wait 60s before retry
                success_threshold=2,  # Need 2 successes to close
            )
        )

        if not self.api_key:
            logger.warning("OPENROUTER_API_KEY not set")

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "HTTP-Referer": self.site_url,
            "X-Title": self.site_name,
            "Content-Type": "application/json",
            "X-Request-ID": str(uuid.uuid4()),
        }

    def _payload(self, model: str, messages: List[Dict[str, str]], options: Dict[str, Any]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": options.get('temperature', 0.7),
            "max_tokens": int(options.get('max_tokens', 8000)),
        }
        if options.get('reasoning'):
            payload["reasoning"] = {"enabled": True}
        if options.get('provider'):
            payload["provider"] = options['provider']
        return payload

    @staticmethod
    def _parse_completion(data: Dict[str, Any]) -> Completion:
        choices = data.get('choices')
        if not choices:
            error = data.get('error', {})
            message = error.get('message', 'Missing choices') if isinstance(error, dict) else str(error)
            raise CompletionError(f"Malformed response: {message}", status_code=200)
        message = choices[0].get('message') or {}
        content = message.get('content')
        if not isinstance(content, str) or not content.strip():
            raise CompletionError("Empty completion content", status_code=200, transient=True)
        return Completion(content=content, usage=TokenUsage.from_api(data.get('usage')), model=data.get('model'))

    async def complete(
        self,
        messages: List[Dict[str, str]],
        model: str,
        options: Optional[Dict[str, Any]] = None,
    ) -> Completion:
        """Run one chat completion.

        Raises:
            CompletionError: transport, provider or response-shape failure
                after retries
        """
        if not self.api_key:
            raise CompletionError("API key not configured", status_code=401)

        if not self.breaker.allow_request():
            raise CompletionError("Circuit breaker open", status_code=503, transient=True)

        options = options or {}
        timeout = int(options.get('timeout', self.timeout))
        payload = self._payload(model, messages, options)
        short_model = model.split('/')[-1]
        start_time = time.time()
        last_error: Optional[CompletionError] = None

        for attempt in range(self.max_retries + 1):
            try:
                logger.info(f"🤖 API call → {short_model} (attempt {attempt + 1}/{self.max_retries + 1})")
                async with aiohttp.ClientSession() as session:
                    async with session.post(
                        self.API_URL,
                        json=payload,
                        headers=self._headers(),
                        timeout=aiohttp.ClientTimeout(total=timeout),
                    ) as response:
                        status_code = response.status
                        text = await response.text()
                        try:
                            data = json.loads(text) if text else {}
                        except json.JSONDecodeError:
                            data = {"error": f"Non-JSON response: {text[:200]}"}

                        if status_code == 200:
                            completion = self._parse_completion(data)
                            elapsed = time.time() - start_time
                            logger.info(f"✅ {short_model} in {elapsed:.1f}s ({completion.total_tokens} tokens)")
                            self.breaker.record_success()
                            return completion

                        error_obj = data.get('error', {}) if isinstance(data, dict) else {}
                        error_msg = error_obj.get('message', str(data)) if isinstance(error_obj, dict) else str(error_obj)
                        logger.warning(f"API error {status_code} ({short_model}): {error_msg}")
                        last_error = CompletionError(
                            f"API error {status_code}: {error_msg}",
                            status_code=status_code,
                            transient=status_code in RETRYABLE_STATUS,
                        )
                        if status_code in RETRYABLE_STATUS and attempt < self.max_retries:
                            backoff = 2 ** attempt * 2
                            logger.info(f"Retrying in {backoff}s...")
                            await asyncio.sleep(backoff)
                            continue
                        break

            except CompletionError as e:
                last_error = e
                break
            except aiohttp.ClientError as e:
                logger.warning(f"Network error: {e}")
                last_error = CompletionError(f"Network error: {e}", transient=True)
            except asyncio.TimeoutError:
                logger.warning(f"Timeout after {timeout}s")
                last_error = CompletionError("Request timeout", status_code=408, transient=True)

            if attempt < self.max_retries:
                await asyncio.sleep(2 ** attempt)

        if last_error is None or last_error.transient:
            self.breaker.record_failure()
        raise last_error or CompletionError("Unknown error", transient=True)


# Singleton instance
_client: Optional[OpenRouterClient] = None


def get_api_client() -> OpenRouterClient:
    """Get shared API client instance."""
    global _client
    if _client is None:
        _client = OpenRouterClient()
    return _client

"""OpenRouter-backed signal provider."""

from __future__ import annotations

import time
from typing import Any

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from signal_trader.ai.schemas import build_market_prompt, parse_signal_text
from signal_trader.config import Settings
from signal_trader.errors import (
    AuthenticationError,
    NetworkError,
    RateLimitError,
    ServiceError,
)
from signal_trader.schemas import MarketSample, TradingSignal
from signal_trader.utils.logging import get_logger, log_llm_call

_OPENROUTER_URL = "https://openrouter.ai/api/v1/chat/completions"
_OPENROUTER_KEY_URL = "https://openrouter.ai/api/v1/auth/key"

_SYSTEM_PROMPT = (
    "You are a cautious crypto trading analyst. Return only JSON with keys: "
    "action (buy, sell or hold), confidence (0 to 1), target_price, stop_loss, reasoning."
)


class OpenRouterSignalProvider:
    """Thin async client for the OpenRouter chat completion endpoint.

    Transport failures are retried a few times in place; everything else is
    mapped onto the shared error taxonomy and left to the recovery system.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._transport = transport
        self._logger = get_logger("signal_trader.ai.openrouter_client")

    async def authenticate(self) -> bool:
        """Return True when the API key is accepted."""
        if not self._settings.openrouter_api_key:
            self._logger.warning("openrouter_api_key_missing")
            return False
        try:
            async with self._client() as client:
                response = await client.get(_OPENROUTER_KEY_URL, headers=self._headers())
        except httpx.TimeoutException as exc:
            raise NetworkError(f"openrouter_timeout: {exc}", service="ai") from exc
        except httpx.HTTPError as exc:
            raise NetworkError(str(exc), service="ai") from exc
        if response.status_code in (401, 403):
            return False
        _raise_for_status(response)
        return True

    async def analyze_market(self, sample: MarketSample) -> TradingSignal:
        """Ask the model for one signal. Unusable output becomes a zero-confidence hold."""
        started = time.perf_counter()
        try:
            content = await self._request_completion(sample)
        except (NetworkError, RateLimitError, AuthenticationError, ServiceError) as exc:
            log_llm_call(
                self._logger,
                model=self._settings.openrouter_model,
                success=False,
                latency_ms=(time.perf_counter() - started) * 1000,
                reason=exc.code,
            )
            raise

        signal = parse_signal_text(content, sample)
        log_llm_call(
            self._logger,
            model=self._settings.openrouter_model,
            success=not (signal.action == "hold" and signal.confidence == 0.0),
            latency_ms=(time.perf_counter() - started) * 1000,
            symbol=sample.symbol,
            action=signal.action,
        )
        return signal

    @retry(
        retry=retry_if_exception_type(NetworkError),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    async def _request_completion(self, sample: MarketSample) -> str:
        if not self._settings.openrouter_api_key:
            raise AuthenticationError("missing_openrouter_api_key", service="ai")

        payload = {
            "model": self._settings.openrouter_model,
            "temperature": 0,
            "messages": [
                {"role": "system", "content": _SYSTEM_PROMPT},
                {"role": "user", "content": build_market_prompt(sample)},
            ],
        }
        try:
            async with self._client() as client:
                response = await client.post(_OPENROUTER_URL, headers=self._headers(), json=payload)
        except httpx.TimeoutException as exc:
            raise NetworkError(f"openrouter_timeout: {exc}", service="ai") from exc
        except httpx.HTTPError as exc:
            raise NetworkError(str(exc), service="ai") from exc

        _raise_for_status(response)
        return _extract_message_content(response.json())

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self._settings.openrouter_timeout,
            transport=self._transport,
        )

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._settings.openrouter_api_key}",
            "Content-Type": "application/json",
        }


def _raise_for_status(response: httpx.Response) -> None:
    """Map HTTP failures onto the error taxonomy."""
    if response.is_success:
        return
    status = response.status_code
    message = f"openrouter_http_{status}"
    if status in (401, 403):
        raise AuthenticationError(message, service="ai")
    if status == 429:
        raise RateLimitError(message, service="ai")
    if status >= 500:
        raise NetworkError(message, service="ai")
    raise ServiceError(message, service="ai", retryable=False)


def _extract_message_content(payload: dict[str, Any]) -> str:
    """Read assistant content from OpenRouter response payload."""
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return "{}"
    first = choices[0]
    if not isinstance(first, dict):
        return "{}"
    message = first.get("message")
    if not isinstance(message, dict):
        return "{}"
    content = message.get("content")
    if isinstance(content, str):
        return content
    return "{}"

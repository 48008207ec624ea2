import asyncio
import json
from collections.abc import Callable

import httpx
import pytest

from signal_trader.ai.heuristic import HeuristicSignalProvider
from signal_trader.ai.openrouter_client import OpenRouterSignalProvider
from signal_trader.ai.schemas import build_market_prompt, parse_signal_text
from signal_trader.config import Settings
from signal_trader.errors import AuthenticationError, RateLimitError, ServiceError
from signal_trader.schemas import MarketSample

_SAMPLE = MarketSample(
    symbol="BTC/USDT",
    price=50_000.0,
    volume=1_234.5,
    timestamp=1_714_564_800_000,
    bid=49_990.0,
    ask=50_010.0,
    change_24h=-4.0,
)


def _completion(content: str) -> dict[str, object]:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


def _provider(
    handler: Callable[[httpx.Request], httpx.Response], api_key: str = "sk-test"
) -> OpenRouterSignalProvider:
    settings = Settings(journal_dir="data/journal", openrouter_api_key=api_key)
    return OpenRouterSignalProvider(settings, transport=httpx.MockTransport(handler))


def test_parse_signal_valid_json() -> None:
    raw = """
    {
      "action": "buy",
      "confidence": 0.72,
      "targetPrice": 50100,
      "stopLoss": 48000,
      "reasoning": "trend remains intact"
    }
    """
    signal = parse_signal_text(raw, _SAMPLE)
    assert signal.symbol == "BTC/USDT"
    assert signal.action == "buy"
    assert signal.confidence == 0.72
    assert signal.target_price == 50_100
    assert signal.stop_loss == 48_000


def test_parse_signal_fenced_json() -> None:
    raw = 'Here you go:\n```json\n{"action": "sell", "confidence": 0.9, "target_price": 51000}\n```'
    signal = parse_signal_text(raw, _SAMPLE)
    assert signal.action == "sell"
    assert signal.target_price == 51_000


def test_parse_signal_invalid_payload_maps_to_hold() -> None:
    raw = '{"action":"buy","confidence":"bad","targetPrice":50000}'
    signal = parse_signal_text(raw, _SAMPLE)
    assert signal.action == "hold"
    assert signal.confidence == 0.0
    assert signal.reasoning.startswith("schema_validation_error")


def test_parse_signal_rejects_unknown_keys() -> None:
    raw = '{"action":"buy","confidence":0.9,"targetPrice":50000,"leverage":20}'
    signal = parse_signal_text(raw, _SAMPLE)
    assert signal.action == "hold"
    assert signal.confidence == 0.0


def test_parse_signal_non_json_maps_to_hold() -> None:
    signal = parse_signal_text("hello world", _SAMPLE)
    assert signal.action == "hold"
    assert signal.reasoning == "model_response_not_json"
    assert signal.target_price == _SAMPLE.price


def test_market_prompt_contains_sample() -> None:
    prompt = build_market_prompt(_SAMPLE)
    assert '"symbol": "BTC/USDT"' in prompt
    assert '"price": 50000.0' in prompt


def test_openrouter_analyze_market_returns_signal() -> None:
    seen: dict[str, object] = {}

    def _handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        content = '{"action":"buy","confidence":0.8,"targetPrice":50000,"reasoning":"dip"}'
        return httpx.Response(200, json=_completion(content))

    signal = asyncio.run(_provider(_handler).analyze_market(_SAMPLE))

    assert signal.action == "buy"
    assert signal.confidence == 0.8
    assert seen["auth"] == "Bearer sk-test"
    assert seen["body"]["temperature"] == 0  # type: ignore[index]


def test_openrouter_maps_http_errors() -> None:
    def _rate_limited(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, json={"error": "slow down"})

    def _unauthorized(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401)

    def _bad_request(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400)

    with pytest.raises(RateLimitError):
        asyncio.run(_provider(_rate_limited).analyze_market(_SAMPLE))
    with pytest.raises(AuthenticationError):
        asyncio.run(_provider(_unauthorized).analyze_market(_SAMPLE))
    with pytest.raises(ServiceError) as excinfo:
        asyncio.run(_provider(_bad_request).analyze_market(_SAMPLE))
    assert not excinfo.value.retryable


def test_openrouter_authenticate() -> None:
    def _ok(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"data": {"label": "test"}})

    def _rejected(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401)

    assert asyncio.run(_provider(_ok).authenticate())
    assert not asyncio.run(_provider(_rejected).authenticate())
    assert not asyncio.run(_provider(_ok, api_key="").authenticate())


def test_heuristic_buys_dips_and_sells_rallies() -> None:
    provider = HeuristicSignalProvider()

    dip = asyncio.run(provider.analyze_market(_SAMPLE))
    assert dip.action == "buy"
    assert dip.target_price == 50_010.0
    assert dip.confidence == pytest.approx(0.8)
    assert dip.stop_loss == pytest.approx(50_010.0 * 0.95)

    rally = asyncio.run(provider.analyze_market(_SAMPLE.model_copy(update={"change_24h": 6.0})))
    assert rally.action == "sell"
    assert rally.target_price == 49_990.0
    assert rally.confidence == pytest.approx(0.9)

    flat = asyncio.run(provider.analyze_market(_SAMPLE.model_copy(update={"change_24h": 1.0})))
    assert flat.action == "hold"

    unknown = asyncio.run(provider.analyze_market(_SAMPLE.model_copy(update={"change_24h": None})))
    assert unknown.action == "hold"
    assert unknown.reasoning == "no_24h_change"

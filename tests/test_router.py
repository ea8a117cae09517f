from types import SimpleNamespace

import litellm
import pytest
from tenacity import wait_none

from sitepilot.config_loader import SitePilotConfig
from sitepilot.errors import TransportError
from sitepilot.models import Capability
from sitepilot.router import Router, _build_kwargs


def _response(content):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=SimpleNamespace(prompt_tokens=3, completion_tokens=4, total_tokens=7),
    )


@pytest.fixture
def calls(monkeypatch):
    recorded = []
    script = []

    def completion(**kwargs):
        recorded.append(kwargs)
        item = script.pop(0) if script else _response('{"ok": true}')
        if isinstance(item, Exception):
            raise item
        return item

    monkeypatch.setattr(litellm, "completion", completion)
    monkeypatch.setattr(litellm, "completion_cost", lambda completion_response: 0.001)
    return recorded, script


@pytest.fixture
def router():
    return Router(SitePilotConfig(), wait=wait_none())


def test_capability_category_picks_profile(router, calls):
    recorded, _ = calls

    router.complete(Capability.MARKET_RESEARCH, [{"role": "user", "content": "hi"}])
    router.complete(Capability.PUBLISHER, [{"role": "user", "content": "hi"}])

    deep, fast = recorded
    assert deep["model"] == router.config.routing.deep_reasoning.model
    assert deep["timeout"] == router.config.routing.deep_reasoning.timeout_s
    assert fast["model"] == router.config.routing.fast_execution.model
    assert fast["timeout"] == router.config.routing.fast_execution.timeout_s


def test_response_and_usage(router, calls):
    response = router.complete(Capability.MONITOR, [{"role": "user", "content": "hi"}], temperature=0.1)

    assert response.content == '{"ok": true}'
    assert response.tokens_used == 7
    assert response.cost == 0.001
    assert calls[0][0]["temperature"] == 0.1
    assert router.usage.summary()["call_count"] == 1
    assert router.usage.summary()["total_tokens"] == 7


def test_transport_failure_switches_to_fallback(router, calls):
    recorded, script = calls
    script.append(RuntimeError("connection reset"))

    response = router.complete(Capability.MONITOR, [{"role": "user", "content": "hi"}])

    fast = router.config.routing.fast_execution
    assert [c["model"] for c in recorded] == [fast.model, fast.fallback]
    assert response.model == fast.fallback


def test_every_attempt_failing_raises_transport_error(router, calls):
    _, script = calls
    script.extend([RuntimeError("down"), RuntimeError("still down")])

    with pytest.raises(TransportError, match="still down"):
        router.complete(Capability.MONITOR, [{"role": "user", "content": "hi"}])


def test_reasoning_models_drop_temperature():
    assert "temperature" not in _build_kwargs("openai/gpt-5-mini", [], 0.5, 100, 30)
    assert "temperature" not in _build_kwargs("o3-mini", [], 0.5, 100, 30)
    assert _build_kwargs("gemini/gemini-2.5-flash", [], 0.5, 100, 30)["temperature"] == 0.5


def test_stream_yields_deltas(router, monkeypatch):
    chunks = [
        SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=text))])
        for text in ("{", None, '"a": 1', "}")
    ]
    monkeypatch.setattr(litellm, "completion", lambda **kwargs: iter(chunks))

    assert "".join(router.stream(Capability.MONITOR, [])) == '{"a": 1}'

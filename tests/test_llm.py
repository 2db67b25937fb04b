import asyncio

import pytest

from docsum import prompts
from docsum.config import Settings
from docsum.health import HealthMonitor
from docsum.llm import (
    BasicBackend,
    CompletionGateway,
    GatewayError,
    OllamaBackend,
    OpenAIBackend,
    build_backend,
    build_gateway,
)
from docsum.models import CompletionStatus, SamplingParams


def response(content, finish_reason="stop"):
    return {"choices": [{"message": {"role": "assistant", "content": content}, "finish_reason": finish_reason}]}


class ScriptedBackend:
    """Returns (or raises) the scripted outcomes in order."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    async def create(self, messages, params):
        self.calls.append((messages, params))
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def ping(self):
        return None


class SlowBackend(ScriptedBackend):
    async def create(self, messages, params):
        self.calls.append((messages, params))
        await asyncio.sleep(5)


def make_gateway(backend, **kwargs):
    sleeps = []

    async def fake_sleep(delay):
        sleeps.append(delay)

    gateway = CompletionGateway(backend, monitor=HealthMonitor(), sleep=fake_sleep, **kwargs)
    return gateway, sleeps


MESSAGES = prompts.chunk_messages("Some section text.", 0, 1)


@pytest.mark.asyncio
async def test_successful_completion():
    backend = ScriptedBackend(response("  A summary.  "))
    gateway, sleeps = make_gateway(backend)
    result = await gateway.complete(MESSAGES, prompts.STAGE_PARAMS["chunk"])

    assert result.status == CompletionStatus.OK
    assert result.text == "A summary."
    assert result.finish_reason == "stop"
    assert result.attempts == 1
    assert sleeps == []
    assert backend.calls[0][1] == prompts.STAGE_PARAMS["chunk"]


@pytest.mark.asyncio
async def test_transient_errors_are_retried_with_backoff():
    backend = ScriptedBackend(ConnectionError("reset"), RuntimeError("LLM Error 503"), response("Recovered."))
    gateway, sleeps = make_gateway(backend)
    result = await gateway.complete(MESSAGES)

    assert result.ok
    assert result.text == "Recovered."
    assert result.attempts == 3
    assert len(sleeps) == 2
    assert 1.0 <= sleeps[0] <= 1.25
    assert 2.0 <= sleeps[1] <= 2.25


@pytest.mark.asyncio
async def test_exhausted_retries_return_failed_result():
    backend = ScriptedBackend(*(RuntimeError("LLM Error 500") for _ in range(3)))
    gateway, sleeps = make_gateway(backend)
    result = await gateway.complete(MESSAGES, purpose="merge")

    assert result.status == CompletionStatus.FAILED
    assert not result.ok
    assert "LLM Error 500" in result.error
    assert result.attempts == 3
    assert len(backend.calls) == 3
    assert len(sleeps) == 2


@pytest.mark.asyncio
async def test_response_without_text_is_malformed_and_not_retried():
    backend = ScriptedBackend({"choices": []}, response("never used"))
    gateway, sleeps = make_gateway(backend)
    result = await gateway.complete(MESSAGES)

    assert result.status == CompletionStatus.MALFORMED
    assert len(backend.calls) == 1
    assert sleeps == []

    backend = ScriptedBackend(response(None))
    gateway, _ = make_gateway(backend)
    assert (await gateway.complete(MESSAGES)).status == CompletionStatus.MALFORMED


@pytest.mark.asyncio
async def test_timeouts_are_retried_then_fail():
    backend = SlowBackend()
    gateway, sleeps = make_gateway(backend, timeout=0.01, max_retries=2)
    result = await gateway.complete(MESSAGES)

    assert result.status == CompletionStatus.FAILED
    assert len(backend.calls) == 2
    assert len(sleeps) == 1


@pytest.mark.asyncio
async def test_truncation_is_reported():
    gateway, _ = make_gateway(ScriptedBackend(response("Cut off mid", finish_reason="length")))
    result = await gateway.complete(MESSAGES)
    assert result.ok
    assert result.truncated


def test_backoff_is_capped():
    gateway, _ = make_gateway(ScriptedBackend(), base_delay=4.0)
    assert gateway.backoff(5, timed_out=False) == 10.0
    assert gateway.backoff(5, timed_out=True) == 20.0
    assert 4.0 <= gateway.backoff(0, timed_out=False) <= 5.0


@pytest.mark.asyncio
async def test_basic_backend_is_deterministic():
    backend = BasicBackend()
    text = "First point. Second point. Third point. Fourth point."
    messages = prompts.chunk_messages(text, 0, 1)
    first = await backend.create(messages, SamplingParams())
    second = await backend.create(messages, SamplingParams())

    assert first == second
    assert first["choices"][0]["message"]["content"] == "First point. Second point. Third point."


@pytest.mark.asyncio
async def test_ollama_backend_normalizes_response(monkeypatch):
    captured = {}

    class FakeResponse:
        def raise_for_status(self):
            return None

        def json(self):
            return {"message": {"role": "assistant", "content": "Local summary."}, "done_reason": "stop"}

    def fake_post(url, json, timeout):
        captured["url"] = url
        captured["payload"] = json
        return FakeResponse()

    monkeypatch.setattr("docsum.llm.requests.post", fake_post)
    backend = OllamaBackend("http://localhost:11434/", "llama3", timeout=5)
    gateway, _ = make_gateway(backend)
    result = await gateway.complete(MESSAGES, SamplingParams(max_tokens=300))

    assert result.text == "Local summary."
    assert captured["url"] == "http://localhost:11434/api/chat"
    assert captured["payload"]["stream"] is False
    assert captured["payload"]["options"]["num_predict"] == 300


def test_build_backend_selection():
    assert isinstance(build_backend(Settings(backend="basic")), BasicBackend)
    assert isinstance(build_backend(Settings(backend="ollama", model="llama3")), OllamaBackend)
    assert isinstance(build_backend(Settings(backend="openai", api_key="sk-test")), OpenAIBackend)

    with pytest.raises(GatewayError, match="OPENAI_API_KEY"):
        build_backend(Settings(backend="openai", api_key=None))
    with pytest.raises(GatewayError, match="Unknown LLM_BACKEND"):
        build_backend(Settings(backend="nope"))


def test_build_gateway_uses_settings():
    monitor = HealthMonitor()
    gateway = build_gateway(Settings(backend="basic", timeout=9, max_retries=5, probe_interval=12), monitor)
    assert gateway.monitor is monitor
    assert gateway.timeout == 9
    assert gateway.max_retries == 5
    assert monitor.interval == 12


@pytest.mark.asyncio
async def test_gateway_close_releases_openai_client():
    backend = OpenAIBackend("sk-test", "gpt-4o-mini", timeout=15)
    assert backend.client.timeout == 15
    gateway = CompletionGateway(backend, monitor=HealthMonitor())
    await gateway.aclose()
    assert backend.client.is_closed()

    # backends without a client close quietly
    await CompletionGateway(BasicBackend(), monitor=HealthMonitor()).aclose()

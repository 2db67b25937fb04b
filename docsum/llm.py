import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

import requests
from openai import APITimeoutError, AsyncOpenAI

from .config import Settings
from .health import HealthMonitor, get_monitor
from .models import CompletionResult, CompletionStatus, HealthStatus, SamplingParams

logger = logging.getLogger(__name__)

Messages = List[Dict[str, str]]

MAX_DELAY = 10.0
TIMEOUT_MAX_DELAY = 20.0


class GatewayError(RuntimeError):
    """Raised for misconfiguration, never for a failed completion."""


class Backend(Protocol):
    async def create(self, messages: Messages, params: SamplingParams) -> Dict[str, Any]:
        ...

    async def ping(self) -> None:
        ...


class OpenAIBackend:
    """OpenAI or any OpenAI-compatible endpoint (``LLM_API_URL``)."""

    def __init__(self, api_key: str, model: str, base_url: Optional[str] = None, timeout: float = 120.0):
        # Retries are handled by the gateway.
        self.client = AsyncOpenAI(api_key=api_key, base_url=base_url, max_retries=0, timeout=timeout)
        self.model = model

    async def create(self, messages: Messages, params: SamplingParams) -> Dict[str, Any]:
        resp = await self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            **params.as_request(),
        )
        return resp.model_dump()

    async def ping(self) -> None:
        await self.client.models.list()

    async def aclose(self) -> None:
        await self.client.close()


class OllamaBackend:
    def __init__(self, base_url: str, model: str, timeout: float = 120.0):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout

    def _chat(self, messages: Messages, params: SamplingParams) -> Dict[str, Any]:
        resp = requests.post(
            f"{self.base_url}/api/chat",
            json={
                "model": self.model,
                "messages": messages,
                "stream": False,
                "options": {
                    "temperature": params.temperature,
                    "top_p": params.top_p,
                    "frequency_penalty": params.frequency_penalty,
                    "presence_penalty": params.presence_penalty,
                    "num_predict": params.max_tokens,
                },
            },
            timeout=self.timeout,
        )
        resp.raise_for_status()
        data = resp.json()
        message = data.get("message")
        if not isinstance(message, dict):
            return {"choices": []}
        return {"choices": [{"message": {"content": message.get("content")},
                             "finish_reason": data.get("done_reason")}]}

    async def create(self, messages: Messages, params: SamplingParams) -> Dict[str, Any]:
        return await asyncio.to_thread(self._chat, messages, params)

    def _tags(self) -> None:
        requests.get(f"{self.base_url}/api/tags", timeout=10).raise_for_status()

    async def ping(self) -> None:
        await asyncio.to_thread(self._tags)


def _extract_text_fragment(messages: Messages) -> str:
    # Pull the 'Text:' section from the last user message
    for m in reversed(messages):
        if m.get("role") == "user":
            content = m.get("content", "")
            if "Text:" in content:
                content = content.split("Text:", 1)[1]
            return content.split("\n---\n", 1)[0].strip()[:5000]
    return ""


class BasicBackend:
    """Deterministic offline summarizer: first three sentences, at most 60 words."""

    async def create(self, messages: Messages, params: SamplingParams) -> Dict[str, Any]:
        text = _extract_text_fragment(messages)
        sentences = [s.strip() for s in text.replace("\n", " ").split(".") if s.strip()]
        summary = ". ".join(sentences[:3]) if sentences else text[:200]
        words = summary.split()
        if len(words) > 60:
            summary = " ".join(words[:60])
        if summary and summary[-1] not in ".!?":
            summary += "."
        return {"choices": [{"message": {"content": summary}, "finish_reason": "stop"}]}

    async def ping(self) -> None:
        return None


def _is_timeout(exc: BaseException) -> bool:
    return isinstance(exc, (asyncio.TimeoutError, APITimeoutError, requests.Timeout))


def _parse(data: Dict[str, Any]) -> Optional[CompletionResult]:
    try:
        choice = data["choices"][0]
        content = choice["message"]["content"]
    except (KeyError, IndexError, TypeError):
        return None
    if not isinstance(content, str):
        return None
    return CompletionResult(CompletionStatus.OK, text=content.strip(), finish_reason=choice.get("finish_reason"))


class CompletionGateway:
    """One request/response exchange with the completion service.

    ``complete`` never raises for service trouble: retries are exhausted
    into a FAILED result, and a response without text becomes MALFORMED.
    """

    def __init__(
        self,
        backend: Backend,
        *,
        monitor: Optional[HealthMonitor] = None,
        timeout: float = 120.0,
        max_retries: int = 3,
        base_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.backend = backend
        self.monitor = monitor or get_monitor()
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.base_delay = base_delay
        self._sleep = sleep

    @property
    def health(self) -> HealthStatus:
        return self.monitor.status

    async def probe(self) -> HealthStatus:
        return await self.monitor.probe(self.backend.ping)

    async def aclose(self) -> None:
        close = getattr(self.backend, "aclose", None)
        if close is not None:
            await close()

    def backoff(self, attempt: int, timed_out: bool) -> float:
        cap = TIMEOUT_MAX_DELAY if timed_out else MAX_DELAY
        delay = self.base_delay * (2 ** attempt) + random.uniform(0, 0.25 * self.base_delay)
        return min(delay, cap)

    async def complete(
        self,
        messages: Messages,
        params: Optional[SamplingParams] = None,
        *,
        purpose: str = "completion",
    ) -> CompletionResult:
        params = params or SamplingParams()
        last_error = ""
        for attempt in range(self.max_retries):
            try:
                data = await asyncio.wait_for(self.backend.create(messages, params), timeout=self.timeout)
            except Exception as e:  # transport, status, decode or timeout
                timed_out = _is_timeout(e)
                last_error = f"{type(e).__name__}: {e}" if str(e) else type(e).__name__
                if attempt == self.max_retries - 1:
                    break
                delay = self.backoff(attempt, timed_out)
                logger.warning("%s attempt %d/%d failed (%s), retrying in %.2fs",
                               purpose, attempt + 1, self.max_retries, last_error, delay)
                await self._sleep(delay)
                continue
            result = _parse(data)
            if result is None:
                logger.warning("%s returned a response without text", purpose)
                return CompletionResult.malformed("response missing choices[0].message.content", attempt + 1)
            return CompletionResult(result.status, text=result.text,
                                    finish_reason=result.finish_reason, attempts=attempt + 1)
        logger.error("%s failed after %d attempts: %s", purpose, self.max_retries, last_error)
        return CompletionResult.failure(last_error, self.max_retries)


def build_backend(settings: Settings) -> Backend:
    if settings.backend == "basic":
        return BasicBackend()
    if settings.backend == "ollama":
        return OllamaBackend(settings.ollama_base_url, settings.ollama_model or settings.model, settings.timeout)
    if settings.backend == "openai":
        if not settings.api_key:
            raise GatewayError(
                "OPENAI_API_KEY is not set. Create a .env file or export the variable before calling LLM functions."
            )
        return OpenAIBackend(settings.api_key, settings.model, settings.api_url, settings.timeout)
    raise GatewayError(f"Unknown LLM_BACKEND '{settings.backend}' (expected openai, ollama or basic)")


def build_gateway(settings: Settings, monitor: Optional[HealthMonitor] = None) -> CompletionGateway:
    monitor = monitor or get_monitor()
    monitor.interval = settings.probe_interval
    return CompletionGateway(
        build_backend(settings),
        monitor=monitor,
        timeout=settings.timeout,
        max_retries=settings.max_retries,
        base_delay=settings.retry_base_delay,
    )

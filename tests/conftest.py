from typing import Callable, Dict, List, Optional

import pytest

from docsum.config import Settings
from docsum.models import CompletionResult, CompletionStatus, HealthStatus


def ok(text: str, finish_reason: Optional[str] = "stop") -> CompletionResult:
    return CompletionResult(CompletionStatus.OK, text=text, finish_reason=finish_reason, attempts=1)


def failed(error: str = "LLM Error 503") -> CompletionResult:
    return CompletionResult.failure(error, 3)


def prompt_text(messages) -> str:
    """Body of the last user message between 'Text:'/'summaries:' and the '---' marker."""
    content = messages[-1]["content"]
    for marker in ("Text:\n", "Partial summaries:\n"):
        if marker in content:
            content = content.split(marker, 1)[1]
            break
    return content.split("\n---\n", 1)[0]


def echo(messages, purpose) -> CompletionResult:
    return ok(prompt_text(messages))


def chunk_index(purpose: str) -> int:
    return int(purpose.split("[", 1)[1].rstrip("]"))


class FakeGateway:
    """Scripted gateway; handlers are keyed by purpose without the [n] suffix."""

    def __init__(self, handlers: Optional[Dict[str, Callable]] = None, status: Optional[HealthStatus] = None):
        self.handlers = handlers or {}
        self.status = status or HealthStatus()
        self.calls: List[str] = []
        self.probes = 0

    async def complete(self, messages, params=None, *, purpose="completion"):
        self.calls.append(purpose)
        stage = purpose.split("[", 1)[0]
        handler = self.handlers.get(stage, echo)
        return handler(messages, purpose)

    async def probe(self):
        self.probes += 1
        return self.status

    def count(self, stage: str) -> int:
        return sum(1 for p in self.calls if p.split("[", 1)[0] == stage)


def paragraphs(count: int, width: int = 199) -> List[str]:
    filler = "lorem ipsum dolor sit amet consectetur. " * (width // 20 + 2)
    return [(f"P{i:02d} " + filler)[: width - 1].rstrip().ljust(width - 1, "x") + "." for i in range(count)]


@pytest.fixture
def small_settings() -> Settings:
    # 40 paragraphs of 199 chars -> 5 chunks; 10 paragraphs -> 2 chunks
    return Settings(
        backend="openai",
        chunk_base_size=1000,
        chunk_min_size=1000,
        chunk_max_size=4000,
        overlap_sentences=0,
        max_chunks=None,
        concurrency=3,
        hierarchical_threshold=8,
        merge_batch_size=5,
    )

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

SUMMARY_VERSION = "2.0"
DEFAULT_FORMAT = "markdown"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class Document:
    name: str
    text: str

    @property
    def length(self) -> int:
        return len(self.text)


@dataclass(frozen=True)
class Chunk:
    """One bounded segment of a document.

    ``overlap`` is the tail of the previous chunk re-seeded at the start of
    ``text``; it is context only; ``primary`` is the content this chunk owns.
    """

    index: int
    text: str
    overlap: str = ""

    @property
    def primary(self) -> str:
        if self.overlap and self.text.startswith(self.overlap):
            return self.text[len(self.overlap):].lstrip()
        return self.text


@dataclass(frozen=True)
class ChunkSummary:
    index: int
    text: str
    degraded: bool = False


@dataclass(frozen=True)
class SamplingParams:
    temperature: float = 0.2
    top_p: float = 0.9
    frequency_penalty: float = 0.0
    presence_penalty: float = 0.0
    max_tokens: int = 1200

    def as_request(self) -> Dict[str, Any]:
        return asdict(self)


class CompletionStatus(str, Enum):
    OK = "ok"
    FAILED = "failed"
    MALFORMED = "malformed"


@dataclass(frozen=True)
class CompletionResult:
    status: CompletionStatus
    text: str = ""
    finish_reason: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.status == CompletionStatus.OK

    @property
    def truncated(self) -> bool:
        return self.finish_reason == "length"

    @classmethod
    def failure(cls, error: str, attempts: int) -> "CompletionResult":
        return cls(CompletionStatus.FAILED, error=error, attempts=attempts)

    @classmethod
    def malformed(cls, error: str, attempts: int) -> "CompletionResult":
        return cls(CompletionStatus.MALFORMED, error=error, attempts=attempts)


@dataclass
class HealthStatus:
    last_checked: Optional[datetime] = None
    healthy: bool = True
    consecutive_failures: int = 0
    avg_latency_ms: float = 1000.0
    multiplier: float = 1.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lastChecked": self.last_checked.isoformat() if self.last_checked else None,
            "healthy": self.healthy,
            "consecutiveFailures": self.consecutive_failures,
            "avgLatencyMs": round(self.avg_latency_ms, 1),
            "multiplier": round(self.multiplier, 3),
        }


class Stage(str, Enum):
    CHUNKING = "chunking"
    PER_CHUNK_SUMMARIZE = "per_chunk_summarize"
    MERGE_DECISION = "merge_decision"
    MERGE = "merge"
    SKIP_MERGE = "skip_merge"
    CONTINUATION_CHECK = "continuation_check"
    POLISH = "polish"
    DEGRADED = "degraded"
    FINALIZE = "finalize"
    DONE = "done"


@dataclass(frozen=True)
class FinalSummary:
    text: str
    source_length: int
    format: str = DEFAULT_FORMAT
    version: str = SUMMARY_VERSION
    generated_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "format": self.format,
            "summary": self.text,
            "generatedAt": self.generated_at,
            "sourceLength": self.source_length,
        }


@dataclass
class PipelineResult:
    """Everything one run produced, including its stage trail."""

    text: str
    source_length: int
    chunks: List[Chunk] = field(default_factory=list)
    chunk_summaries: List[ChunkSummary] = field(default_factory=list)
    stages: List[Stage] = field(default_factory=list)
    degraded_stages: List[Stage] = field(default_factory=list)
    merge_calls: int = 0
    continuation_calls: int = 0

    @property
    def degraded(self) -> bool:
        return bool(self.degraded_stages) or any(s.degraded for s in self.chunk_summaries)

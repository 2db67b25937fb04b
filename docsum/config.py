import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(level: Optional[str] = None) -> None:
    if level is None:
        level = "DEBUG" if os.getenv("DEBUG_STREAM", "0") == "1" else os.getenv("LOG_LEVEL", "INFO")
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)


def _int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


@dataclass
class Settings:
    backend: str = "openai"  # openai | ollama | basic
    api_key: Optional[str] = None
    api_url: Optional[str] = None
    model: str = "gpt-4o-mini"
    ollama_base_url: str = "http://localhost:11434"
    ollama_model: Optional[str] = None
    timeout: float = 120.0
    max_retries: int = 3
    retry_base_delay: float = 1.0
    probe_interval: float = 30.0

    chunk_base_size: int = 6000
    chunk_min_size: int = 2000
    chunk_max_size: int = 8000
    overlap_sentences: int = 2
    max_chunks: Optional[int] = 20

    concurrency: int = 4
    hierarchical_threshold: int = 8
    merge_batch_size: int = 5
    max_continuations: int = 3
    mock_mode: bool = False

    summary_dir: str = "summaries"
    watch_dir: Optional[str] = None
    watch_workers: int = 2
    watch_poll_seconds: float = 2.0

    @property
    def deterministic(self) -> bool:
        return self.mock_mode or self.backend == "basic"

    @classmethod
    def from_env(cls) -> "Settings":
        max_chunks = _int("MAX_CHUNKS", 20)
        return cls(
            backend=os.getenv("LLM_BACKEND", "openai").lower(),
            api_key=os.getenv("OPENAI_API_KEY") or os.getenv("API_TOKEN"),
            api_url=os.getenv("LLM_API_URL") or None,
            model=os.getenv("OPENAI_MODEL") or os.getenv("LLM_MODEL_NAME") or "gpt-4o-mini",
            ollama_base_url=os.getenv("OLLAMA_BASE_URL", "http://localhost:11434"),
            ollama_model=os.getenv("OLLAMA_MODEL") or None,
            timeout=_float("LLM_TIMEOUT", 120.0),
            max_retries=_int("OPENAI_MAX_RETRIES", 3),
            retry_base_delay=_float("OPENAI_RETRY_BASE_DELAY", 1.0),
            chunk_base_size=_int("CHUNK_BASE_SIZE", 6000),
            chunk_min_size=_int("CHUNK_MIN_SIZE", 2000),
            chunk_max_size=_int("CHUNK_MAX_SIZE", 8000),
            overlap_sentences=_int("PDF_CHUNK_OVERLAP_SENTENCES", 2),
            max_chunks=max_chunks if max_chunks > 0 else None,
            concurrency=_int("SUMMARY_CONCURRENCY", 4),
            hierarchical_threshold=_int("HIERARCHICAL_THRESHOLD", 8),
            merge_batch_size=_int("MERGE_BATCH_SIZE", 5),
            mock_mode=os.getenv("MOCK_MODE", "0") == "1",
            summary_dir=os.getenv("SUMMARY_DIR", "summaries"),
            watch_dir=os.getenv("WATCH_DIR") or None,
            watch_workers=_int("WATCH_WORKERS", 2),
            watch_poll_seconds=_float("WATCH_POLL_SECONDS", 2.0),
        )

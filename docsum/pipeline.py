"""Stage orchestration for one document run.

    Chunking -> PerChunkSummarize -> MergeDecision -> Merge | SkipMerge
             -> ContinuationCheck -> Polish -> Finalize -> Done

Any stage that exhausts its retries records ``Stage.DEGRADED`` and hands the
best partial text to the next stage; a run never aborts once text is in hand.
"""
import asyncio
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Tuple

from . import prompts
from .assembler import assemble_record
from .chunking import chunk_document, clean_text, drop_letterhead
from .config import Settings
from .llm import build_gateway
from .models import Chunk, ChunkSummary, Document, CompletionResult, HealthStatus, PipelineResult, SamplingParams, Stage
from .pdf_loader import load_text

logger = logging.getLogger(__name__)

SEPARATOR = "\n\n"
FALLBACK_EXCERPT_CHARS = 400
TERMINAL_PUNCTUATION = (".", "!", "?")
_CLOSERS = "\"')]*_`»”’"
_FENCE_RE = re.compile(r"```(?:markdown|md)?\n?")


class Gateway(Protocol):
    async def complete(self, messages, params: Optional[SamplingParams] = None, *,
                       purpose: str = "completion") -> CompletionResult:
        ...

    async def probe(self) -> HealthStatus:
        ...


def is_terminated(text: str) -> bool:
    return text.rstrip().rstrip(_CLOSERS).endswith(TERMINAL_PUNCTUATION)


def ensure_terminated(text: str) -> str:
    text = text.rstrip()
    if not text or is_terminated(text):
        return text
    return text.rstrip(",;:-– ") + "."


def strip_code_fences(text: str) -> str:
    return _FENCE_RE.sub("", text).replace("```", "").strip()


def fallback_excerpt(chunk: Chunk, limit: int = FALLBACK_EXCERPT_CHARS) -> str:
    """Leading characters of the chunk's own content, cut at a word boundary."""
    text = " ".join(chunk.primary.split())
    if len(text) > limit:
        cut = text[:limit]
        space = cut.rfind(" ")
        text = cut[:space] if space > limit // 2 else cut
    return ensure_terminated(text)


def append_continuation(text: str, continuation: str) -> str:
    continuation = continuation.strip()
    if not continuation:
        return text
    if continuation[0] in ".,;:!?)":
        return text.rstrip() + continuation
    return f"{text.rstrip()} {continuation}"


class SummaryPipeline:
    def __init__(self, gateway: Gateway, settings: Optional[Settings] = None):
        self.gateway = gateway
        self.settings = settings or Settings()

    # -- stages -----------------------------------------------------------

    def prepare(self, text: str) -> str:
        cleaned, removed = clean_text(text)
        if removed:
            logger.debug("Preprocessing removed %d artifacts", len(removed))
        return drop_letterhead(cleaned) if cleaned else text.strip()

    async def chunk(self, text: str) -> List[Chunk]:
        s = self.settings
        multiplier = 1.0
        if not s.deterministic:
            multiplier = (await self.gateway.probe()).multiplier
        return chunk_document(
            text,
            base_size=s.chunk_base_size,
            min_size=s.chunk_min_size,
            max_size=s.chunk_max_size,
            overlap_sentences=s.overlap_sentences,
            max_chunks=s.max_chunks,
            multiplier=multiplier,
        )

    async def summarize_chunks(self, chunks: List[Chunk]) -> List[ChunkSummary]:
        semaphore = asyncio.Semaphore(max(1, self.settings.concurrency))
        total = len(chunks)

        async def _one(chunk: Chunk) -> ChunkSummary:
            async with semaphore:
                try:
                    result = await self.gateway.complete(
                        prompts.chunk_messages(chunk.text, chunk.index, total),
                        prompts.STAGE_PARAMS["chunk"],
                        purpose=f"summarize_chunk[{chunk.index}]",
                    )
                except Exception as e:  # one chunk never sinks the run
                    result = CompletionResult.failure(str(e), 0)
            if result.ok and result.text:
                return ChunkSummary(chunk.index, result.text)
            logger.warning("Chunk %d/%d degraded to excerpt (%s)", chunk.index + 1, total,
                           result.error or "empty response")
            return ChunkSummary(chunk.index, fallback_excerpt(chunk), degraded=True)

        # gather keeps input order: summary i belongs to chunk i.
        return list(await asyncio.gather(*(_one(c) for c in chunks)))

    async def _merge_once(self, texts: List[str], purpose: str) -> Tuple[str, Optional[CompletionResult]]:
        joined = SEPARATOR.join(texts)
        result = await self.gateway.complete(
            prompts.merge_messages(joined), prompts.STAGE_PARAMS["merge"], purpose=purpose)
        if result.ok and result.text:
            return result.text, result
        logger.warning("%s degraded to concatenation (%s)", purpose, result.error or "empty response")
        return joined, None

    async def merge(self, summaries: List[ChunkSummary], run: PipelineResult) -> Tuple[str, Optional[CompletionResult]]:
        texts = [s.text for s in summaries]
        batch_size = max(2, self.settings.merge_batch_size)
        if len(texts) <= self.settings.hierarchical_threshold:
            run.merge_calls += 1
            text, result = await self._merge_once(texts, "merge")
            if result is None:
                run.degraded_stages.append(Stage.MERGE)
            return text, result

        batches = [texts[i:i + batch_size] for i in range(0, len(texts), batch_size)]
        logger.info("Hierarchical merge: %d summaries in %d batches", len(texts), len(batches))
        partials: List[str] = []
        any_degraded = False
        for n, batch in enumerate(batches):
            run.merge_calls += 1
            text, result = await self._merge_once(batch, f"merge_batch[{n}]")
            any_degraded = any_degraded or result is None
            partials.append(text)
        run.merge_calls += 1
        text, result = await self._merge_once(partials, "merge_final")
        if result is None or any_degraded:
            run.degraded_stages.append(Stage.MERGE)
        return text, result

    async def continue_truncated(self, text: str, last: Optional[CompletionResult], run: PipelineResult) -> str:
        truncated = (last is not None and last.truncated) or not is_terminated(text)
        attempts = 0
        while truncated and attempts < self.settings.max_continuations:
            attempts += 1
            run.continuation_calls += 1
            result = await self.gateway.complete(
                prompts.continue_messages(text), prompts.STAGE_PARAMS["continue"],
                purpose=f"continue[{attempts}]")
            if not (result.ok and result.text):
                logger.warning("Continuation %d failed (%s), keeping text as is", attempts, result.error)
                break
            text = append_continuation(text, result.text)
            truncated = result.truncated or not is_terminated(text)
        if truncated and attempts:
            logger.info("Summary still truncated after %d continuation(s)", attempts)
        return text

    async def polish(self, text: str, run: PipelineResult) -> str:
        result = await self.gateway.complete(
            prompts.polish_messages(text), prompts.STAGE_PARAMS["polish"], purpose="polish")
        if result.ok and result.text:
            return result.text
        logger.warning("Polish failed (%s), keeping unpolished summary", result.error or "empty response")
        run.degraded_stages.append(Stage.POLISH)
        return text

    @staticmethod
    def finalize(text: str) -> str:
        return ensure_terminated(strip_code_fences(text))

    # -- driver -----------------------------------------------------------

    async def run(self, text: str) -> PipelineResult:
        prepared = self.prepare(text)
        if not prepared:
            raise ValueError("document contains no text")
        run = PipelineResult(text="", source_length=len(text))
        deterministic = self.settings.deterministic

        run.stages.append(Stage.CHUNKING)
        run.chunks = await self.chunk(prepared)

        run.stages.append(Stage.PER_CHUNK_SUMMARIZE)
        run.chunk_summaries = await self.summarize_chunks(run.chunks)
        if any(s.degraded for s in run.chunk_summaries):
            run.stages.append(Stage.DEGRADED)

        run.stages.append(Stage.MERGE_DECISION)
        last: Optional[CompletionResult] = None
        if len(run.chunk_summaries) <= 2 or deterministic:
            run.stages.append(Stage.SKIP_MERGE)
            working = SEPARATOR.join(s.text for s in run.chunk_summaries)
        else:
            run.stages.append(Stage.MERGE)
            working, last = await self.merge(run.chunk_summaries, run)
            if Stage.MERGE in run.degraded_stages:
                run.stages.append(Stage.DEGRADED)

        # Mock mode runs no model stages after the per-chunk pass.
        if not deterministic:
            run.stages.append(Stage.CONTINUATION_CHECK)
            if last is not None or Stage.SKIP_MERGE in run.stages:
                working = await self.continue_truncated(working, last, run)
            run.stages.append(Stage.POLISH)
            working = await self.polish(working, run)
            if Stage.POLISH in run.degraded_stages:
                run.stages.append(Stage.DEGRADED)

        run.stages.append(Stage.FINALIZE)
        run.text = self.finalize(working)
        run.stages.append(Stage.DONE)
        logger.info("Run finished: %d chunks, %d merge call(s), %d continuation(s), degraded=%s",
                    len(run.chunks), run.merge_calls, run.continuation_calls, run.degraded)
        return run


async def summarize_text(text: str, file_name: str, pipeline: SummaryPipeline) -> Tuple[Dict[str, Any], PipelineResult]:
    document = Document(name=file_name, text=text)
    result = await pipeline.run(document.text)
    record = assemble_record(document.name, result.text, document.length)
    return record, result


def summarize_document(path: str, settings: Optional[Settings] = None) -> Dict[str, Any]:
    """Load, summarize and package one document file (blocking)."""
    settings = settings or Settings.from_env()
    text = load_text(path)
    gateway = build_gateway(settings)

    async def _run() -> Tuple[Dict[str, Any], PipelineResult]:
        try:
            return await summarize_text(text, Path(path).name, SummaryPipeline(gateway, settings))
        finally:
            await gateway.aclose()

    record, result = asyncio.run(_run())
    return {
        "record": record,
        "chunks": len(result.chunks),
        "partial_summaries": [s.text for s in result.chunk_summaries],
        "degraded": result.degraded,
        "final_summary": result.text,
    }

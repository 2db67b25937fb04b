"""Document ingestion: a polling watcher feeding an explicit work queue."""
import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Set

from .pdf_loader import SUPPORTED_SUFFIXES, DocumentLoadError, load_text
from .pipeline import SummaryPipeline, summarize_text
from .store import SummaryStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DocumentReady:
    path: Path


class DocumentWatcher:
    """Polls a directory and enqueues each new document once.

    A file is handed over only after its size is unchanged between two scans,
    so half-written uploads are not picked up. Files that already have a
    stored summary are skipped.
    """

    def __init__(self, directory: str, queue: "asyncio.Queue[DocumentReady]", store: SummaryStore,
                 poll_seconds: float = 2.0):
        self.directory = Path(directory)
        self.queue = queue
        self.store = store
        self.poll_seconds = poll_seconds
        self._sizes: Dict[Path, int] = {}
        self._queued: Set[Path] = set()

    def _candidates(self) -> List[Path]:
        if not self.directory.is_dir():
            return []
        return sorted(
            p for p in self.directory.iterdir()
            if p.is_file() and not p.name.startswith(".") and p.suffix.lower() in SUPPORTED_SUFFIXES
        )

    def scan(self) -> List[Path]:
        ready = []
        present = set()
        for path in self._candidates():
            if path in self._queued:
                present.add(path)
                continue
            if self.store.exists(path.name):
                self._queued.add(path)
                present.add(path)
                continue
            try:
                size = path.stat().st_size
            except OSError as e:
                logger.debug("Skipping %s: %s", path.name, e)
                continue
            present.add(path)
            if self._sizes.get(path) == size:
                ready.append(path)
                self._queued.add(path)
            self._sizes[path] = size
        # Forget files that disappeared so a re-upload is seen again.
        for path in set(self._sizes) - present:
            del self._sizes[path]
        self._queued &= present
        return ready

    async def poll_once(self) -> int:
        ready = self.scan()
        for path in ready:
            logger.info("File added: %s", path)
            await self.queue.put(DocumentReady(path))
        return len(ready)

    async def run(self) -> None:
        logger.info("Watching %s every %.1fs", self.directory, self.poll_seconds)
        while True:
            try:
                await self.poll_once()
            except Exception:  # a failed scan must not end the watcher
                logger.exception("Scan of %s failed", self.directory)
            await asyncio.sleep(self.poll_seconds)


async def process_document(item: DocumentReady, pipeline: SummaryPipeline, store: SummaryStore) -> Optional[Path]:
    try:
        text = await asyncio.to_thread(load_text, str(item.path))
    except DocumentLoadError as e:
        logger.error("Skipping %s: %s", item.path.name, e)
        return None
    record, _ = await summarize_text(text, item.path.name, pipeline)
    return store.save(record)


async def worker(name: str, queue: "asyncio.Queue[DocumentReady]", pipeline: SummaryPipeline,
                 store: SummaryStore) -> None:
    while True:
        item = await queue.get()
        try:
            await process_document(item, pipeline, store)
        except Exception:  # one bad document must not stop the worker
            logger.exception("[%s] run failed for %s", name, item.path.name)
        finally:
            queue.task_done()


def start_ingestion(directory: str, pipeline: SummaryPipeline, store: SummaryStore, *,
                    workers: int = 2, poll_seconds: float = 2.0) -> List["asyncio.Task[None]"]:
    queue: "asyncio.Queue[DocumentReady]" = asyncio.Queue()
    watcher = DocumentWatcher(directory, queue, store, poll_seconds)
    tasks = [asyncio.create_task(watcher.run(), name="docsum-watcher")]
    tasks += [
        asyncio.create_task(worker(f"worker-{n}", queue, pipeline, store), name=f"docsum-worker-{n}")
        for n in range(max(1, workers))
    ]
    return tasks

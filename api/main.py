import asyncio
import logging
import os
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, File, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from docsum.config import Settings, configure_logging
from docsum.health import get_monitor
from docsum.llm import CompletionGateway, GatewayError, build_gateway
from docsum.pdf_loader import DocumentLoadError, load_text
from docsum.pipeline import SummaryPipeline, summarize_text
from docsum.store import SummaryStore
from docsum.watcher import start_ingestion

configure_logging()
logger = logging.getLogger("docsum.api")

settings = Settings.from_env()
if settings.backend == "openai" and not settings.api_key:
    # Not fatal for health and listing endpoints
    logger.warning("OPENAI_API_KEY not set: summarization endpoints will fail until configured.")


_gateway: Optional[CompletionGateway] = None


def get_gateway() -> CompletionGateway:
    """One gateway (and HTTP client) shared by every request."""
    global _gateway
    if _gateway is None:
        _gateway = build_gateway(settings)
    return _gateway


def get_pipeline() -> SummaryPipeline:
    try:
        gateway = get_gateway()
    except GatewayError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return SummaryPipeline(gateway, settings)


def get_store() -> SummaryStore:
    return SummaryStore(settings.summary_dir)


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _gateway
    tasks = []
    if settings.watch_dir:
        tasks = start_ingestion(
            settings.watch_dir,
            SummaryPipeline(get_gateway(), settings),
            get_store(),
            workers=settings.watch_workers,
            poll_seconds=settings.watch_poll_seconds,
        )
    yield
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
    if _gateway is not None:
        await _gateway.aclose()
        _gateway = None


app = FastAPI(title="Document Summarizer API", version="2.0.0", lifespan=lifespan)

# -------------------------------------------------------------
# CORS (frontend dev runs on a different port e.g. 5173)
# -------------------------------------------------------------
origins_env = os.getenv("CORS_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173")
origins = [o.strip() for o in origins_env.split(",") if o.strip()]
# Support wildcard shortcut
allow_origins = ["*"] if any(o == "*" for o in origins) else origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
def health() -> dict:
    return {"status": "ok", "backend": settings.backend, "completion": get_monitor().status.to_dict()}


class SummarizeRequest(BaseModel):
    text: str
    file_name: str = "document.txt"
    persist: bool = False


@app.post("/summarize")
async def summarize(req: SummarizeRequest):
    if not req.text.strip():
        raise HTTPException(status_code=400, detail="text field cannot be empty")
    record, result = await summarize_text(req.text, req.file_name, get_pipeline())
    if req.persist:
        get_store().save(record)
    return {
        "record": record,
        "chunks": len(result.chunks),
        "partial": [s.text for s in result.chunk_summaries],
        "degraded": result.degraded,
    }


@app.post("/summarize-pdf")
async def summarize_pdf(file: UploadFile = File(...), persist: bool = True):
    if file.content_type != "application/pdf":
        raise HTTPException(status_code=400, detail="Only PDF supported")
    content = await file.read()
    if len(content) == 0:
        raise HTTPException(status_code=400, detail="Empty file uploaded")
    with tempfile.NamedTemporaryFile(delete=False, suffix=".pdf") as tmp:
        tmp.write(content)
        path = tmp.name
    try:
        text = load_text(path)
    except DocumentLoadError as e:
        raise HTTPException(status_code=400, detail=str(e))
    finally:
        Path(path).unlink(missing_ok=True)
    record, result = await summarize_text(text, file.filename or "upload.pdf", get_pipeline())
    if persist:
        get_store().save(record)
    return {"record": record, "chunks": len(result.chunks), "degraded": result.degraded}


@app.get("/api/summaries")
def list_summaries(file_name: Optional[str] = None):
    records = get_store().list()
    if file_name:
        records = [r for r in records if r.get("fileName") == file_name]
    return records


@app.exception_handler(Exception)
async def generic_handler(request, exc):  # pragma: no cover
    logger.exception("Unhandled error on %s", request.url.path)
    return JSONResponse(status_code=500, content={"error": str(exc)})


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=os.getenv("HOST", "127.0.0.1"), port=int(os.getenv("PORT", "8000")))

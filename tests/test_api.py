import fitz
import pytest
from fastapi.testclient import TestClient

from api import main
from docsum.config import Settings
from docsum.health import HealthMonitor
from docsum.llm import BasicBackend, CompletionGateway
from docsum.pipeline import SummaryPipeline


@pytest.fixture
def client(tmp_path, monkeypatch):
    pipeline = SummaryPipeline(CompletionGateway(BasicBackend(), monitor=HealthMonitor()), Settings(backend="basic"))
    monkeypatch.setattr(main, "get_pipeline", lambda: pipeline)
    monkeypatch.setattr(main.settings, "summary_dir", str(tmp_path / "summaries"))
    return TestClient(main.app)


def pdf_bytes(text):
    doc = fitz.open()
    doc.new_page().insert_text((72, 72), text)
    data = doc.tobytes()
    doc.close()
    return data


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert "multiplier" in body["completion"]


def test_summarize_text(client):
    resp = client.post("/summarize", json={"text": "Rule one applies. Rule two applies.", "file_name": "rules.txt"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["chunks"] == 1
    assert body["degraded"] is False
    assert body["record"]["fileName"] == "rules.txt"
    assert body["record"]["summary"]["summary"] == "Rule one applies. Rule two applies."
    assert client.get("/api/summaries").json() == []


def test_summarize_rejects_empty_text(client):
    assert client.post("/summarize", json={"text": "   "}).status_code == 400


def test_summarize_pdf_persists_record(client):
    files = {"file": ("memo.pdf", pdf_bytes("The board approved the budget."), "application/pdf")}
    resp = client.post("/summarize-pdf", files=files)
    assert resp.status_code == 200
    assert resp.json()["record"]["fileName"] == "memo.pdf"

    listed = client.get("/api/summaries", params={"file_name": "memo.pdf"}).json()
    assert len(listed) == 1
    assert "budget" in listed[0]["summaryText"]
    assert client.get("/api/summaries", params={"file_name": "other.pdf"}).json() == []


def test_summarize_pdf_rejects_other_types(client):
    files = {"file": ("notes.txt", b"hello", "text/plain")}
    assert client.post("/summarize-pdf", files=files).status_code == 400


def test_missing_api_key_is_service_unavailable(monkeypatch):
    monkeypatch.setattr(main, "settings", Settings(backend="openai", api_key=None))
    monkeypatch.setattr(main, "_gateway", None)
    resp = TestClient(main.app).post("/summarize", json={"text": "Something."})
    assert resp.status_code == 503
    assert "OPENAI_API_KEY" in resp.json()["detail"]


def test_requests_share_one_gateway(monkeypatch):
    monkeypatch.setattr(main, "settings", Settings(backend="basic"))
    monkeypatch.setattr(main, "_gateway", None)
    first = main.get_pipeline()
    second = main.get_pipeline()
    assert first.gateway is second.gateway
    assert isinstance(first.gateway.backend, BasicBackend)

import json
import logging
from pathlib import Path
from typing import Any, Dict, List

from .models import utc_now_iso

logger = logging.getLogger(__name__)


def summary_text(record: Dict[str, Any]) -> str:
    """Displayable summary text for current and legacy record shapes."""
    summary = record.get("summary")
    if isinstance(summary, dict):
        return str(summary.get("summary", ""))
    if isinstance(summary, str):
        return summary
    if isinstance(record.get("finalSummary"), str):
        return record["finalSummary"]
    parts = []
    for item in record.get("summaries") or []:
        if isinstance(item, str):
            parts.append(item)
        elif isinstance(item, dict):
            parts.append(str(item.get("summary") or item.get("text") or ""))
    return "\n\n".join(p for p in parts if p)


class SummaryStore:
    """One JSON record per document in a directory."""

    def __init__(self, directory: str):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def path_for(self, file_name: str) -> Path:
        return self.directory / f"{Path(file_name).stem}.json"

    def exists(self, file_name: str) -> bool:
        return self.path_for(file_name).exists()

    def save(self, record: Dict[str, Any]) -> Path:
        path = self.path_for(record["fileName"])
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(record, indent=2, ensure_ascii=False), encoding="utf-8")
        tmp.replace(path)
        logger.info("Saved summary for %s to %s", record["fileName"], path)
        return path

    def list(self) -> List[Dict[str, Any]]:
        records = []
        for path in self.directory.glob("*.json"):
            try:
                record = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as e:
                logger.error("Error parsing %s: %s", path.name, e)
                record = {
                    "fileName": path.name,
                    "processedAt": utc_now_iso(),
                    "error": "Invalid JSON format",
                    "summary": "Could not parse summary file.",
                }
            if not isinstance(record, dict):
                continue
            record.setdefault("fileName", path.name)
            record["summaryText"] = summary_text(record)
            records.append(record)
        records.sort(key=lambda r: r.get("processedAt") or "", reverse=True)
        return records

import logging
from typing import Any, Dict, List, Optional

from jsonschema import Draft7Validator

from .models import DEFAULT_FORMAT, FinalSummary, utc_now_iso

logger = logging.getLogger(__name__)

SUMMARY_RECORD_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "fileName": {"type": "string"},
        "processedAt": {"type": "string"},
        "summary": {
            "type": "object",
            "properties": {
                "version": {"type": "string"},
                "format": {"type": "string"},
                "summary": {"type": "string", "minLength": 1},
                "generatedAt": {"type": "string"},
                "sourceLength": {"type": "integer", "minimum": 0},
            },
            "required": ["version", "format", "summary", "generatedAt", "sourceLength"],
        },
    },
    "required": ["fileName", "processedAt", "summary"],
}

# Declared output schemas, keyed by summary format.
SCHEMAS: Dict[str, Dict[str, Any]] = {
    DEFAULT_FORMAT: SUMMARY_RECORD_SCHEMA,
}


def validate_record(record: Dict[str, Any], schema: Dict[str, Any]) -> List[str]:
    validator = Draft7Validator(schema)
    return [
        f"{'/'.join(str(p) for p in err.absolute_path) or '<root>'}: {err.message}"
        for err in sorted(validator.iter_errors(record), key=lambda e: list(e.absolute_path))
    ]


def assemble_record(
    file_name: str,
    text: str,
    source_length: int,
    *,
    fmt: str = DEFAULT_FORMAT,
    schema: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Package a finalized summary for persistence.

    Validation is best effort: problems are logged and the record is
    returned regardless.
    """
    summary = FinalSummary(text=text, source_length=source_length, format=fmt)
    record = {
        "fileName": file_name,
        "processedAt": utc_now_iso(),
        "summary": summary.to_dict(),
    }
    schema = schema if schema is not None else SCHEMAS.get(fmt)
    if schema is not None:
        errors = validate_record(record, schema)
        for problem in errors:
            logger.warning("Summary record for %s does not match %s schema: %s", file_name, fmt, problem)
    return record

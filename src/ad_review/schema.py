"""Validation of history records posted by clients.

Payloads are checked against the packaged JSON Schema first. On top of the
schema, a client may not send reviewer feedback with a new record: the
rating and the human issue count are written only by ``FeedbackRecorder``
after the checklist for that exact report text has been completed.
"""

from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List

from jsonschema import Draft202012Validator, FormatChecker

SCHEMA_PATH = Path(__file__).resolve().parent / "schemas" / "history_record.schema.json"
FEEDBACK_FIELDS = ("user_rating", "human_issue_count")


@lru_cache(maxsize=1)
def history_validator() -> Draft202012Validator:
    schema = json.loads(SCHEMA_PATH.read_text(encoding="utf-8"))
    Draft202012Validator.check_schema(schema)
    return Draft202012Validator(schema, format_checker=FormatChecker())


def _problems(payload: Dict[str, Any]) -> List[str]:
    found = []
    for err in history_validator().iter_errors(payload):
        where = "/".join(str(part) for part in err.absolute_path) or "record"
        found.append(f"{where}: {err.message}")
    found.sort()
    for field in FEEDBACK_FIELDS:
        if payload.get(field) is not None:
            found.append(f"{field}: set only by the rating flow after the checklist is complete")
    return found


def validate_history_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Return ``payload`` ready to build a ``ReportRecord`` from.

    Raises ValueError listing every problem. Feedback fields that are
    present but null are dropped.
    """
    problems = _problems(payload)
    if problems:
        raise ValueError("Invalid history record: " + "; ".join(problems))
    return {key: value for key, value in payload.items() if key not in FEEDBACK_FIELDS}

"""Domain event log shared with the rest of the pipeline tooling.

Each event is one JSON object per line in ``<home>/events.jsonl``::

    {"ts": "2026-01-31T12:00:00Z", "type": "optimize.model_switched", "stage": "build", ...}
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pipeline_tuner.file_io import append_jsonl
from pipeline_tuner.schemas import utc_now_iso

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SanitizeOptions:
    """Limits controlling recursive payload sanitization."""

    max_depth: int = 4
    max_list_items: int = 50
    max_dict_items: int = 50
    max_key_len: int = 80
    max_str_len: int = 400
    fallback_repr_len: int = 200


_DEFAULT_OPTIONS = SanitizeOptions()


def truncate_text(text: str, max_len: int) -> str:
    """Trim whitespace and clamp to ``max_len`` characters."""
    clean = (text or "").strip()
    if len(clean) <= max_len:
        return clean
    return clean[: max_len - 3] + "..."


def sanitize_json_value(value: Any, *, options: SanitizeOptions = _DEFAULT_OPTIONS, depth: int = 0) -> Any:
    """Recursively sanitize values so they can be serialized as strict JSON."""
    if depth > options.max_depth:
        return "[truncated-depth]"
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, str):
        return truncate_text(value, options.max_str_len)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, (list, tuple)):
        return [
            sanitize_json_value(item, options=options, depth=depth + 1)
            for item in value[: options.max_list_items]
        ]
    if isinstance(value, dict):
        out: dict[str, Any] = {}
        for index, (key, item) in enumerate(value.items()):
            if index >= options.max_dict_items:
                out["__truncated__"] = f"{len(value) - options.max_dict_items} more key(s)"
                break
            out[truncate_text(str(key), options.max_key_len)] = sanitize_json_value(
                item, options=options, depth=depth + 1
            )
        return out
    return truncate_text(repr(value), options.fallback_repr_len)


class EventLog:
    """Append-only domain event sink."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def emit(self, event_type: str, **fields: Any) -> dict[str, Any]:
        """Record one event. Write failures are logged, never raised."""
        payload: dict[str, Any] = {"ts": utc_now_iso(), "type": truncate_text(event_type, 80)}
        for key, value in fields.items():
            if key in payload:
                continue
            payload[key] = sanitize_json_value(value)
        try:
            append_jsonl(self.path, payload)
        except (OSError, ValueError) as exc:
            logger.warning("Could not append event %s: %s", event_type, exc)
        else:
            logger.debug("event %s %s", event_type, fields)
        return payload

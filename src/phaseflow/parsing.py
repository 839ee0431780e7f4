from __future__ import annotations

import json
from typing import Any


def extract_json_objects(raw_text: str) -> list[dict[str, Any]]:
    """Return every line of ``raw_text`` that is a standalone JSON object."""
    payloads: list[dict[str, Any]] = []
    for raw_line in raw_text.splitlines():
        line = raw_line.strip()
        if not (line.startswith("{") and line.endswith("}")):
            continue
        try:
            parsed = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            payloads.append(parsed)
    return payloads


def tail(text: str, limit: int = 2000) -> str:
    stripped = text.strip()
    return stripped[-limit:] if len(stripped) > limit else stripped

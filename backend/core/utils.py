"""
Utility functions for the todo plan engine.

Includes:
- UTC datetime helpers
- Identifier generation
- Listing envelope normalisation
- JSON extraction from model output
"""

import json
import re
import secrets
from datetime import datetime, timezone
from typing import Any, Optional


def utc_now() -> datetime:
    """
    Get the current UTC datetime.

    Returns:
        Current datetime in UTC timezone
    """
    return datetime.now(timezone.utc)


def elapsed_ms(started_at: Optional[datetime], ended_at: Optional[datetime] = None) -> int:
    """Milliseconds between two timestamps (0 when the start is unknown)."""
    if started_at is None:
        return 0
    ended_at = ended_at or utc_now()
    return max(0, int((ended_at - started_at).total_seconds() * 1000))


def generate_id(prefix: str, suffix: Optional[str] = None) -> str:
    """
    Generate a prefixed identifier like ``plan_1718000000000_k3j9x2a1b``.

    Args:
        prefix: Leading label (plan, approval, run)
        suffix: Fixed tail; a random token is used when omitted

    Returns:
        Identifier string
    """
    stamp = int(utc_now().timestamp() * 1000)
    tail = suffix if suffix is not None else secrets.token_hex(5)[:9]
    return f"{prefix}_{stamp}_{tail}"


# Keys a listing result may wrap its items in
_LIST_KEYS = ("todos", "items", "data", "results")


def as_items(result: Any) -> list:
    """Normalise a listing result (bare list or envelope dict) to a list of records."""
    if result is None:
        return []
    if isinstance(result, list):
        return result
    if isinstance(result, dict):
        for key in _LIST_KEYS:
            if isinstance(result.get(key), list):
                return result[key]
    return []


def extract_json(text: str) -> Any:
    """Extract a JSON value from text that may carry markdown fences or prose.

    Tries, in order: a direct parse, the contents of a ```json fence, and
    the first bracket-balanced object.

    Raises:
        ValueError: if nothing parseable is found
    """
    if not text or not text.strip():
        raise ValueError("Empty response")

    clean = text.strip()

    try:
        return json.loads(clean)
    except json.JSONDecodeError:
        pass

    fence_pattern = re.compile(r"```(?:json|JSON)?\s*\n?(.*?)```", re.DOTALL)
    match = fence_pattern.search(clean)
    if match:
        try:
            return json.loads(match.group(1).strip())
        except json.JSONDecodeError:
            pass

    start = clean.find("{")
    if start != -1:
        depth = 0
        in_string = False
        escape_next = False
        for i in range(start, len(clean)):
            c = clean[i]
            if escape_next:
                escape_next = False
                continue
            if c == "\\":
                escape_next = True
                continue
            if c == '"':
                in_string = not in_string
                continue
            if in_string:
                continue
            if c == "{":
                depth += 1
            elif c == "}":
                depth -= 1
                if depth == 0:
                    try:
                        return json.loads(clean[start:i + 1])
                    except json.JSONDecodeError:
                        break

    raise ValueError(f"Could not extract JSON from response: {clean[:200]}")

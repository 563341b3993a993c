"""
Scrubbing helpers for anything that may end up in logs or diagnostics.

Twitch error bodies and validation payloads can echo credentials back; every
key that looks token-shaped is dropped before the value leaves the client.
"""

from __future__ import annotations

import json
import re
from typing import Any

import httpx

BEARER_PATTERN = re.compile(r"(Bearer|OAuth)\s+[A-Za-z0-9._-]+", re.IGNORECASE)
MAX_ERROR_LENGTH = 300


def scrub_tokens(value: Any) -> Any:
    """Recursively drop dict keys containing "token" (case-insensitive)."""
    if isinstance(value, dict):
        return {
            key: scrub_tokens(item)
            for key, item in value.items()
            if "token" not in str(key).lower()
        }
    if isinstance(value, (list, tuple)):
        return [scrub_tokens(item) for item in value]
    if isinstance(value, str):
        return BEARER_PATTERN.sub(r"\1 [redacted]", value)
    return value


def response_body(response: httpx.Response) -> Any:
    """Best-effort decoded body (JSON, then text), scrubbed."""
    try:
        body: Any = response.json()
    except ValueError:
        try:
            body = response.text
        except Exception:
            body = None
    return scrub_tokens(body)


def sanitize_error(error: Any) -> str:
    """Short, token-free description of an exception or error body."""
    if isinstance(error, BaseException):
        status = getattr(error, "status", None)
        body = getattr(error, "body", None)
        if status is not None and body is not None:
            text = json.dumps({"status": status, "body": scrub_tokens(body)}, default=str)
        else:
            text = str(error) or error.__class__.__name__
    elif isinstance(error, (dict, list)):
        text = json.dumps(scrub_tokens(error), default=str)
    else:
        text = str(error)

    text = BEARER_PATTERN.sub(r"\1 [redacted]", text)
    if len(text) > MAX_ERROR_LENGTH:
        text = text[:MAX_ERROR_LENGTH] + "..."
    return text

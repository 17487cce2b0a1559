"""Redaction of submitter tokens in debug logs.

Reports and inbound payloads carry an opaque submitter token (``user_hash``
in the observed client's rows) that is only used for de-duplication and
must never end up in logs verbatim.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

_TOKEN_FIELDS: frozenset[str] = frozenset({"submitter_token", "user_hash"})


def redact_report(payload: Mapping[str, Any], *, max_string: int = 256) -> dict[str, Any]:
    """Return a copy of a report dump or inbound payload safe for debug logs.

    Non-empty token fields are replaced and oversized strings truncated.
    """
    redacted: dict[str, Any] = {}
    for key, value in payload.items():
        name = str(key)
        if name.lower() in _TOKEN_FIELDS and value:
            redacted[name] = "<redacted>"
        elif isinstance(value, str) and len(value) > max_string:
            redacted[name] = f"{value[:max_string]}…<truncated>"
        else:
            redacted[name] = value
    return redacted

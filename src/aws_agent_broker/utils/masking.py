"""Sensitive-field redaction for audit parameters and response data.

``redact_sensitive_fields`` walks dicts, lists and tuples and replaces any
value whose key contains one of ``SENSITIVE_KEY_MARKERS``. Matching ignores
case as well as ``_`` and ``-`` separators, so ``AccessKeyId``,
``access_key_id`` and ``access-key-id`` are all caught.
"""

from __future__ import annotations

_MAX_REDACT_DEPTH = 20

REDACTED = "[REDACTED]"

SENSITIVE_KEY_MARKERS: tuple[str, ...] = (
    "password",
    "secret",
    "token",
    "credential",
    "accesskey",
    "authorization",
)


def _normalize_key(key: object) -> str:
    return str(key).lower().replace("_", "").replace("-", "")


def is_sensitive_key(key: object) -> bool:
    normalized = _normalize_key(key)
    return any(marker in normalized for marker in SENSITIVE_KEY_MARKERS)


def redact_sensitive_fields(
    value: object,
    *,
    mask: str = REDACTED,
    depth: int = 0,
    max_depth: int = _MAX_REDACT_DEPTH,
) -> object:
    """Return a redacted copy of ``value``; the input is never modified.

    Sub-trees deeper than ``max_depth`` are replaced with ``mask`` as a whole.
    """
    if depth >= max_depth:
        return mask
    if isinstance(value, dict):
        redacted: dict[str, object] = {}
        for key, val in value.items():
            if is_sensitive_key(key):
                redacted[key] = mask
            else:
                redacted[key] = redact_sensitive_fields(
                    val, mask=mask, depth=depth + 1, max_depth=max_depth,
                )
        return redacted
    if isinstance(value, (list, tuple)):
        return [
            redact_sensitive_fields(
                item, mask=mask, depth=depth + 1, max_depth=max_depth,
            )
            for item in value
        ]
    return value


def mask_identifier(value: str | None, visible: int = 4) -> str:
    """Show only the first ``visible`` characters of a key id."""
    if not value:
        return ""
    return f"{value[:visible]}***"

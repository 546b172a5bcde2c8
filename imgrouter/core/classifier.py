"""Credential classification: map an API key to its provider by shape alone."""

from __future__ import annotations

import re
from typing import Optional

from imgrouter.api.schemas import Provider

_UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE,
)
_GITEE_RE = re.compile(r"^[A-Za-z0-9]{30,60}$")

# Evaluated in order, first match wins.
_PREFIX_RULES: list[tuple[str, Provider]] = [
    ("ms-", Provider.MODELSCOPE),
    ("hf_", Provider.HUGGINGFACE),
]
_PATTERN_RULES: list[tuple[re.Pattern, Provider]] = [
    (_UUID_RE, Provider.VOLCENGINE),
    (_GITEE_RE, Provider.GITEE),
]


def classify(credential: Optional[str]) -> Provider:
    """Return the provider a credential belongs to, or Provider.UNKNOWN."""
    if not credential:
        return Provider.UNKNOWN

    for prefix, provider in _PREFIX_RULES:
        if credential.startswith(prefix):
            return provider

    for pattern, provider in _PATTERN_RULES:
        # fullmatch: "$" alone would accept a trailing newline
        if pattern.fullmatch(credential):
            return provider

    return Provider.UNKNOWN


def mask_credential(credential: Optional[str]) -> str:
    """First 6 and last 4 characters only; short values are hidden entirely."""
    if not credential:
        return ""
    if len(credential) <= 10:
        return "***"
    return f"{credential[:6]}...{credential[-4:]}"

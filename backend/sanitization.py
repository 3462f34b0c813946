from __future__ import annotations

import ipaddress
import re
from typing import Any
from urllib.parse import urlparse

REDACTED = "[REDACTED_SECRET]"

SECRET_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(
        r"-----BEGIN [A-Z ]*PRIVATE KEY-----.*?(?:-----END [A-Z ]*PRIVATE KEY-----|\Z)",
        re.DOTALL,
    ),
    re.compile(r"AKIA[0-9A-Z]{16}"),
    re.compile(r"password\s*[=:]\s*\S*", re.IGNORECASE),
    re.compile(r"api[_-]?key\s*[=:]\s*\S*", re.IGNORECASE),
    re.compile(r"[A-Za-z0-9]{40,}"),
)


def redact_secrets(text: str) -> str:
    for pattern in SECRET_PATTERNS:
        text = pattern.sub(REDACTED, text)
    return text


def sanitize(value: Any) -> Any:
    """Return a copy of ``value`` with secrets redacted from every string.

    Dictionary keys are scanned too; keys that collide after redaction get a
    numeric suffix. Values that are not JSON types are turned into strings so
    the result always serializes.
    """
    if isinstance(value, str):
        return redact_secrets(value)
    if isinstance(value, dict):
        cleaned: dict[str, Any] = {}
        for key, item in value.items():
            name = redact_secrets(str(key))
            if name in cleaned:
                suffix = 2
                while f"{name}_{suffix}" in cleaned:
                    suffix += 1
                name = f"{name}_{suffix}"
            cleaned[name] = sanitize(item)
        return cleaned
    if isinstance(value, (list, tuple)):
        return [sanitize(item) for item in value]
    if value is None or isinstance(value, (bool, int)):
        return value
    if isinstance(value, float):
        return value if value == value and value not in (float("inf"), float("-inf")) else None
    return redact_secrets(str(value))


def _is_blocked_host(host: str) -> bool:
    host = host.lower().rstrip(".")
    if host == "localhost" or host.endswith(".localhost"):
        return True
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return False
    return (
        address.is_loopback
        or address.is_private
        or address.is_link_local
        or address.is_unspecified
    )


def validate_url(url: str) -> bool:
    """Accept only public ``http``/``https`` URLs. No DNS lookup is performed."""
    if not isinstance(url, str) or not url.strip():
        return False
    try:
        parsed = urlparse(url.strip())
        host = parsed.hostname
    except ValueError:
        return False
    if parsed.scheme.lower() not in ("http", "https") or not host:
        return False
    return not _is_blocked_host(host)

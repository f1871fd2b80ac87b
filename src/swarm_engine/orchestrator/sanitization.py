"""Secret masking for logged commands, environment maps and stored errors."""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable, Mapping

_MAX_ERROR_CHARS = 4_000
_MASK = "***"

SENSITIVE_ENV_PATTERNS: tuple[str, ...] = (
    "API_KEY",
    "SECRET",
    "PASSWORD",
    "TOKEN",
    "CREDENTIAL",
    "AUTH",
    "PRIVATE_KEY",
    "ACCESS_KEY",
)

_Replacement = str | Callable[[re.Match[str]], str]

_REPLACEMENTS: tuple[tuple[re.Pattern[str], _Replacement], ...] = (
    (
        re.compile(r"(?i)\b(bearer)\s+[a-z0-9._\-]{8,}\b"),
        r"\1 [redacted-token]",
    ),
    (
        re.compile(r"(?i)\b(sk-[a-z0-9\-_]{8,})\b"),
        "[redacted-token]",
    ),
    (
        re.compile(
            r"\b([A-Z0-9_]*(?:API_KEY|SECRET|PASSWORD|TOKEN|CREDENTIAL|PRIVATE_KEY|ACCESS_KEY)"
            r"[A-Z0-9_]*)=('[^']*'|\"[^\"]*\"|\S+)",
        ),
        lambda match: f"{match.group(1)}=[redacted]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|key|signature|auth)=[^&\s]+)"),
        lambda match: match.group(1).split("=")[0] + "=[redacted]",
    ),
)


def is_sensitive_env_key(name: str) -> bool:
    upper = name.upper()
    return any(pattern in upper for pattern in SENSITIVE_ENV_PATTERNS)


def mask_env(env: Mapping[str, str]) -> dict[str, str]:
    """Copy of ``env`` safe to log: sensitive values replaced by a mask."""

    return {key: _MASK if is_sensitive_env_key(key) else value for key, value in env.items()}


def secret_values(env: Mapping[str, str]) -> tuple[str, ...]:
    """Values of sensitive variables, longest first, for literal redaction."""

    values = {value for key, value in env.items() if value and is_sensitive_env_key(key)}
    return tuple(sorted(values, key=len, reverse=True))


def sanitize_text(
    text: str,
    *,
    secrets: Iterable[str] = (),
    max_chars: int = _MAX_ERROR_CHARS,
) -> str:
    """Redact known secret values and obvious token shapes, then clamp size."""

    compact = text.strip()
    if not compact:
        return ""

    redacted = compact
    for secret in secrets:
        if len(secret) >= 4:
            redacted = redacted.replace(secret, "[redacted]")
    for pattern, replacement in _REPLACEMENTS:
        redacted = pattern.sub(replacement, redacted)

    if len(redacted) <= max_chars:
        return redacted
    return redacted[:max_chars]

"""Regex-based field extraction from nginx, systemd and dotenv text.

Every helper is a pure function over the text it is handed. They never touch
the filesystem and only fail when the caller passes something other than a
string.
"""
from __future__ import annotations

import re

PROXY_TARGET_RE = re.compile(r"proxy_pass\s+http://(\d{1,3}(?:\.\d{1,3}){3}):(\d+);")

# Tried in order; the first pattern that matches anywhere in the text wins.
PORT_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\bPORT=(\d+)"),
    re.compile(r"\b\d{1,3}(?:\.\d{1,3}){3}:(\d+)"),
    re.compile(r"--port[=\s]+(\d+)"),
)


def _require_text(content: object, label: str = "content") -> str:
    if not isinstance(content, str):
        raise TypeError(f"{label} must be a string, got {type(content).__name__}.")
    return content


def extract_assignment(content: str, name: str) -> str | None:
    """Return the trimmed value of the first ``NAME=value`` line, if any."""
    text = _require_text(content)
    key = _require_text(name, "name")
    match = re.search(rf"^{re.escape(key)}=(.+)$", text, re.MULTILINE)
    if match is None:
        return None
    value = match.group(1).strip()
    return value or None


def extract_directive_tokens(
    content: str,
    directive: str,
    *,
    terminator: str = ";",
) -> list[str]:
    """Collect whitespace-separated tokens following every *directive*.

    Tokens are de-duplicated while preserving the order in which they were
    first seen across all occurrences of the directive.
    """
    text = _require_text(content)
    keyword = _require_text(directive, "directive")
    end = re.escape(terminator)
    pattern = re.compile(rf"\b{re.escape(keyword)}\s+([^{end}]+){end}")

    tokens: list[str] = []
    seen: set[str] = set()
    for match in pattern.finditer(text):
        for token in match.group(1).split():
            if token not in seen:
                seen.add(token)
                tokens.append(token)
    return tokens


def extract_proxy_target(content: str) -> tuple[str, int] | None:
    """Return the ``(ip, port)`` of the first ``proxy_pass http://ip:port;``."""
    text = _require_text(content)
    match = PROXY_TARGET_RE.search(text)
    if match is None:
        return None
    return match.group(1), int(match.group(2))


def extract_port(content: str) -> str | None:
    """Return the raw digit run captured by the first matching port pattern.

    The caller decides whether the digits form a valid port; this helper
    never truncates or coerces them.
    """
    text = _require_text(content)
    for pattern in PORT_PATTERNS:
        match = pattern.search(text)
        if match is not None:
            return match.group(1)
    return None


__all__ = [
    "PORT_PATTERNS",
    "extract_assignment",
    "extract_directive_tokens",
    "extract_port",
    "extract_proxy_target",
]

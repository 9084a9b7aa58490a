"""Parse nginx reverse-proxy site files."""
from __future__ import annotations

import re
from dataclasses import dataclass, field

from ..extractors import extract_directive_tokens, extract_proxy_target

DEFAULT_FRAMEWORK = "ExpressJs"
STATIC_FRAMEWORK = "Next.js / Python"
STATIC_LOCATION_RE = re.compile(r"location\s+/static\s*\{")


@dataclass(slots=True, frozen=True)
class ParsedNginxSite:
    """Fields recovered from one nginx site file."""

    server_names: tuple[str, ...] = field(default_factory=tuple)
    listen_port: int | None = None
    upstream_ip_address: str | None = None
    framework: str = DEFAULT_FRAMEWORK

    @property
    def primary_server_name(self) -> str | None:
        """Return the first server name, if any."""
        return self.server_names[0] if self.server_names else None

    @property
    def additional_server_names(self) -> list[str]:
        """Return every server name after the primary one."""
        return list(self.server_names[1:])

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "server_names": list(self.server_names),
            "listen_port": self.listen_port,
            "upstream_ip_address": self.upstream_ip_address,
            "framework": self.framework,
        }


def parse_nginx_config(text: str) -> ParsedNginxSite:
    """Extract server names, the proxied upstream and a framework guess.

    ``server_name`` directives are flattened across every ``server`` block.
    The first ``proxy_pass http://ip:port;`` supplies the upstream address
    and port. The framework is a best-effort heuristic: a ``location /static``
    block marks a Next.js or Python app, anything else is reported as
    ExpressJs.
    """
    server_names = extract_directive_tokens(text, "server_name")
    target = extract_proxy_target(text)
    framework = STATIC_FRAMEWORK if STATIC_LOCATION_RE.search(text) else DEFAULT_FRAMEWORK
    return ParsedNginxSite(
        server_names=tuple(server_names),
        listen_port=target[1] if target else None,
        upstream_ip_address=target[0] if target else None,
        framework=framework,
    )


__all__ = ["DEFAULT_FRAMEWORK", "STATIC_FRAMEWORK", "ParsedNginxSite", "parse_nginx_config"]

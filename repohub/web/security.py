from __future__ import annotations

import ipaddress
import os
from typing import Iterable, Optional

from fastapi import Header
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import PlainTextResponse

Network = ipaddress.IPv4Network | ipaddress.IPv6Network


def parse_allowed_nets(entries: Iterable[str]) -> tuple[Network, ...]:
    """CIDR strings to networks; a bare address means a single host."""
    nets = []
    for entry in entries:
        text = entry.strip()
        if not text:
            continue
        try:
            nets.append(ipaddress.ip_network(text, strict=False))
        except ValueError as exc:
            raise ValueError(f"invalid network in allowlist: {text}") from exc
    return tuple(nets)


class NetworkAllowlistMiddleware(BaseHTTPMiddleware):
    """Reject requests whose socket peer is outside the configured networks.

    Only the transport-level peer address is checked; forwarded-for headers
    are caller-controlled and ignored. An empty allowlist admits everyone,
    a malformed one rejects everything with 503.
    """

    def __init__(self, app, allowed_nets: Iterable[str]):
        super().__init__(app)
        self.networks: tuple[Network, ...] = ()
        self.config_error: Optional[str] = None
        try:
            self.networks = parse_allowed_nets(allowed_nets)
        except ValueError as exc:
            self.config_error = str(exc)

    def peer_allowed(self, host: str) -> bool:
        try:
            ip = ipaddress.ip_address(host)
        except ValueError:
            return False
        return any(ip in net for net in self.networks)

    async def dispatch(self, request: Request, call_next):
        if self.config_error:
            return PlainTextResponse(f"Access denied: allowlist misconfigured ({self.config_error})", status_code=503)
        if self.networks:
            host = request.client.host if request.client else ""
            if not self.peer_allowed(host):
                return PlainTextResponse(f"Access denied: {host or 'unknown peer'} not in allowlist", status_code=403)
        return await call_next(request)


def get_allowed_nets() -> list[str]:
    # Unset means open; deployments behind a public port should set it.
    return [s for s in os.environ.get("ALLOWED_NETS", "").split(",") if s.strip()]


def presented_secret(x_sync_secret: Optional[str] = Header(default=None)) -> Optional[str]:
    """The shared secret sent in the X-Sync-Secret header, if any."""
    return x_sync_secret

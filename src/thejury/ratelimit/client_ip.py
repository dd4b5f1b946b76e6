"""Client address extraction for rate-limit keys."""

from __future__ import annotations

from collections.abc import Mapping

UNKNOWN_CLIENT = "unknown"


def client_ip(
    headers: Mapping[str, str],
    remote: str | None = None,
    *,
    trust_forwarded: bool = True,
) -> str:
    """Best-effort client address.

    Prefers the first ``X-Forwarded-For`` hop, then ``X-Real-IP``, then the
    socket peer. Forwarding headers are client-controlled unless a proxy
    rewrites them, so set *trust_forwarded* to False when nothing does.
    """
    if trust_forwarded:
        lower_headers = {k.lower(): v for k, v in headers.items()}
        forwarded = lower_headers.get("x-forwarded-for", "")
        if forwarded.strip():
            return forwarded.split(",")[0].strip()
        real_ip = lower_headers.get("x-real-ip", "")
        if real_ip.strip():
            return real_ip.strip()
    return remote or UNKNOWN_CLIENT


def limit_key(route: str, ip: str) -> str:
    return f"{route}:{ip}"

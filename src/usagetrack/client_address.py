from __future__ import annotations

from typing import Mapping, Optional

HOPS = ("first", "last")


def peer_address(host: Optional[str], port: Optional[int]) -> str:
    if not host:
        return ""
    if port is None:
        return host
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def resolve_client_address(
    headers: Mapping[str, str],
    peer: str,
    header: Optional[str] = None,
    hop: str = "first",
) -> str:
    """
    Address of the uploading client.  With a trusted forwarding header
    (e.g. X-Forwarded-For) its first or last comma-separated hop wins;
    otherwise the connection's peer address is used.
    """
    if header:
        raw = headers.get(header) or headers.get(header.lower())
        if raw:
            hops = [h.strip() for h in raw.split(",") if h.strip()]
            if hops:
                return hops[-1] if hop == "last" else hops[0]
    return peer

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Sequence

import requests
from fastapi import FastAPI, HTTPException, Request, Response

from usagetrack.client_address import peer_address, resolve_client_address
from usagetrack.config import TrackerConfig
from usagetrack.grammars import matchers_for
from usagetrack.line_protocol import session_lines
from usagetrack.parser import parse_bytes
from usagetrack.session import SessionRecord
from usagetrack.uploader import InfluxWriter

log = logging.getLogger(__name__)

UPSTREAM_TIMEOUT_S = 30.0


class LineSink(Protocol):
    def submit(self, lines: Sequence[str]) -> None:
        ...


def _client_address(request: Request, config: TrackerConfig) -> str:
    peer = peer_address(request.client.host, request.client.port) if request.client else ""
    return resolve_client_address(
        request.headers,
        peer,
        header=config.client_ip_header,
        hop=config.client_ip_hop,
    )


# RFC 7230 hop-by-hop headers, plus the ones requests recomputes
HOP_BY_HOP = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "host",
    "content-length",
})


def _end_to_end(headers: Mapping[str, str], drop: Iterable[str] = ()) -> Dict[str, str]:
    skip = HOP_BY_HOP.union(drop)
    out = {}
    for key, val in headers.items():
        if key.lower() not in skip:
            out[key] = val
    return out


def _forward(method: str, url: str, query: str, body: bytes, headers: Dict[str, str]) -> requests.Response:
    if query:
        url = f"{url}?{query}"
    return requests.request(method, url, data=body, headers=headers, timeout=UPSTREAM_TIMEOUT_S)


def create_app(config: Optional[TrackerConfig] = None, writer: Optional[LineSink] = None) -> FastAPI:
    config = (config or TrackerConfig.from_env()).validate()
    if writer is None and config.uploads_enabled:
        writer = InfluxWriter(
            config.endpoint,
            config.database,
            config.policy,
            config.token,
            timeout=config.timeout_s,
        )
    if writer is None:
        log.warning("no measurement endpoint configured, sessions will be parsed but not uploaded")
    matchers = matchers_for(config.grammars)

    app = FastAPI(title="Usage Tracker")
    app.state.config = config
    app.state.writer = writer

    def track(body: bytes, client: str) -> List[SessionRecord]:
        if len(body) > config.max_body_bytes:
            log.warning("upload from %s too large to parse (%d bytes)", client, len(body))
            return []
        sessions = parse_bytes(body, client, matchers)
        log.info("upload from %s: %d session(s)", client, len(sessions))
        if sessions and writer is not None:
            writer.submit(session_lines(sessions))
        return sessions

    # ----------------------------
    # Routes
    # ----------------------------
    @app.get("/healthz")
    def healthz():
        return {"ok": True, "uploads": writer is not None}

    @app.api_route("/{path:path}", methods=["POST", "PUT"])
    async def upload(path: str, request: Request):
        body = await request.body()
        client = _client_address(request, config)
        sessions = await asyncio.to_thread(track, body, client)

        if not config.upstream_url:
            return {"ok": True, "sessions": len(sessions)}

        url = f"{config.upstream_url.rstrip('/')}/{path}"
        try:
            res = await asyncio.to_thread(
                _forward,
                request.method,
                url,
                request.url.query,
                body,
                _end_to_end(request.headers),
            )
        except requests.RequestException as e:
            log.error("upstream forward to %s failed: %s", url, e)
            raise HTTPException(502, "upstream unavailable")
        # requests has already decoded the body
        return Response(
            content=res.content,
            status_code=res.status_code,
            headers=_end_to_end(res.headers, drop=("content-encoding",)),
        )

    return app

"""
Reconstructs session records from uploaded application log text.

The scan is a two-state machine (IDLE / ACCUMULATING) over two field scopes:
ambient fields, which apply to every session in the log, and the open
session's own fields.  Ambient and session fields are merged only when a
session is emitted, with the session's own values taking precedence.

Parsing never fails: lines that don't match a grammar, and markers missing
their required parts, are skipped.
"""
from __future__ import annotations

import enum
import logging
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Sequence

from usagetrack.grammars import DEFAULT_GRAMMARS, LineMatcher, Marker, MarkerKind, match_line, matchers_for
from usagetrack.session import SessionRecord

log = logging.getLogger(__name__)

_DEFAULT_MATCHERS = matchers_for(DEFAULT_GRAMMARS)


class ScanState(enum.Enum):
    IDLE = "idle"
    ACCUMULATING = "accumulating"


class _OpenSession:
    __slots__ = ("session_id", "launch_time", "launch_duration", "fields")

    def __init__(self, session_id: str, launch_time: datetime, fields: Dict[str, str]):
        self.session_id = session_id
        self.launch_time = launch_time
        self.launch_duration = timedelta(0)
        self.fields: Dict[str, str] = dict(fields)

    def close(self, ambient: Dict[str, str], client_address: str) -> SessionRecord:
        merged = dict(ambient)
        merged.update(self.fields)
        return SessionRecord(
            session_id=self.session_id,
            launch_time=self.launch_time,
            launch_duration=self.launch_duration,
            client_ip=client_address,
            **merged,
        )


class SessionScan:
    def __init__(self, client_address: str):
        self.client_address = client_address
        self.state = ScanState.IDLE
        self.ambient: Dict[str, str] = {}
        self.current: Optional[_OpenSession] = None
        self.records: List[SessionRecord] = []
        self.skipped = 0

    def feed(self, marker: Marker) -> None:
        if marker.kind is MarkerKind.AMBIENT:
            self.ambient.update(marker.fields)
        elif marker.kind is MarkerKind.START:
            self._start(marker)
        elif self.state is ScanState.IDLE:
            # session fields and durations need an open session
            self.skipped += 1
        elif marker.kind is MarkerKind.SESSION:
            self.current.fields.update(marker.fields)
        elif marker.kind is MarkerKind.DURATION:
            self._duration(marker)

    def _start(self, marker: Marker) -> None:
        if not marker.session_id or marker.launch_time is None:
            self.skipped += 1
            return
        if self.state is ScanState.ACCUMULATING:
            if self.current.session_id == marker.session_id:
                # same session announced again
                self.current.fields.update(marker.fields)
                return
            self._emit()
        self.current = _OpenSession(marker.session_id, marker.launch_time, marker.fields)
        self.state = ScanState.ACCUMULATING

    def _duration(self, marker: Marker) -> None:
        if marker.launch_duration is None or (marker.session_id and marker.session_id != self.current.session_id):
            self.skipped += 1
            return
        self.current.launch_duration = marker.launch_duration

    def _emit(self) -> None:
        if self.state is ScanState.ACCUMULATING:
            self.records.append(self.current.close(self.ambient, self.client_address))
        self.current = None
        self.state = ScanState.IDLE

    def finish(self) -> List[SessionRecord]:
        self._emit()
        return self.records


def parse_log(
    text: str,
    client_address: str,
    matchers: Optional[Sequence[LineMatcher]] = None,
) -> List[SessionRecord]:
    """
    Returns one record per session found in ``text``, in the order the
    sessions start in the log.  ``client_address`` is stamped on every record.
    A log with no recognizable session yields an empty list.
    """
    active: Iterable[LineMatcher] = _DEFAULT_MATCHERS if matchers is None else matchers
    scan = SessionScan(client_address)
    for line in text.splitlines():
        marker = match_line(line, active)
        if marker is not None:
            scan.feed(marker)
    records = scan.finish()
    log.debug("parsed %d session(s), skipped %d marker(s)", len(records), scan.skipped)
    return records


def parse_bytes(
    body: bytes,
    client_address: str,
    matchers: Optional[Sequence[LineMatcher]] = None,
) -> List[SessionRecord]:
    return parse_log(body.decode("utf-8", errors="replace"), client_address, matchers)

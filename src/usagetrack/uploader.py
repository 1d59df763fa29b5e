from __future__ import annotations

import logging
import queue
import threading
from typing import List, Sequence

import requests

from usagetrack.line_protocol import session_lines
from usagetrack.session import SessionRecord

log = logging.getLogger(__name__)


class InfluxWriter:
    """Writes line-protocol batches to an InfluxDB v1 ``/write`` endpoint."""

    def __init__(
        self,
        endpoint: str,
        database: str,
        policy: str,
        token: str,
        timeout: float = 5.0,
        max_queue: int = 1000,
        start_worker: bool = True,
    ):
        self.endpoint = endpoint.rstrip("/")
        self.database = database
        self.policy = policy
        self.token = token
        self.timeout = timeout
        self.q: "queue.Queue[List[str]]" = queue.Queue(maxsize=max_queue)
        if start_worker:
            threading.Thread(target=self._worker, name="influx-writer", daemon=True).start()

    @property
    def write_url(self) -> str:
        return f"{self.endpoint}/write"

    def write_lines(self, lines: Sequence[str]) -> bool:
        if not lines:
            return True
        params = {"db": self.database, "rp": self.policy, "precision": "ms"}
        headers = {
            "Content-Type": "text/plain",
            "Authorization": f"Token {self.token}",
        }
        body = "\n".join(lines) + "\n"
        try:
            res = requests.post(
                self.write_url,
                params=params,
                data=body.encode("utf-8"),
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            log.error("influx upload POST request error: %s", e)
            return False
        if res.status_code != 204:
            log.error("influx upload data issues: status=%d error=%s", res.status_code, res.text)
            return False
        return True

    def submit(self, lines: Sequence[str]) -> None:
        if not lines:
            return
        try:
            self.q.put_nowait(list(lines))
        except queue.Full:
            log.warning("influx upload queue full, dropping %d line(s)", len(lines))

    def _worker(self):
        while True:
            lines = self.q.get()
            try:
                self.write_lines(lines)
            except Exception:
                log.exception("influx upload worker error")
            finally:
                self.q.task_done()


def send_sessions(writer: InfluxWriter, sessions: Sequence[SessionRecord]) -> bool:
    if not sessions:
        return True
    return writer.write_lines(session_lines(sessions))

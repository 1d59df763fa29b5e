from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from usagetrack.session import SessionRecord

TESTDATA_DIR = Path(__file__).parent / "testdata"


@pytest.fixture
def read_log():
    def _read(name: str) -> str:
        return (TESTDATA_DIR / name).read_text(encoding="utf-8")

    return _read


@pytest.fixture
def bare_session() -> SessionRecord:
    return SessionRecord(
        session_id="testSession1",
        launch_time=datetime.fromtimestamp(1716994039, tz=timezone.utc),
        launch_duration=timedelta(milliseconds=320010),
        client_ip="127.0.0.1:53450",
    )


@pytest.fixture
def full_session(bare_session: SessionRecord) -> SessionRecord:
    return bare_session.model_copy(
        update={
            "app_id": "InDesign1",
            "app_version": "19.2",
            "app_locale": "en_US",
            "ngl_version": "1.35.0.19",
            "os_name": "MAC",
            "os_version": "14.3.1",
            "user_id": "9e5fa",
        }
    )

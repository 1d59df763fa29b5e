from __future__ import annotations

from datetime import datetime, timedelta, timezone

from pydantic import BaseModel, ConfigDict, field_validator

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class SessionRecord(BaseModel):
    """One application launch interval, as observed when the log was uploaded."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    launch_time: datetime
    launch_duration: timedelta = timedelta(0)
    client_ip: str = ""

    app_id: str = ""
    app_version: str = ""
    app_locale: str = ""
    ngl_version: str = ""
    os_name: str = ""
    os_version: str = ""
    user_id: str = ""

    @field_validator("launch_time")
    @classmethod
    def _aware(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @property
    def launch_time_ms(self) -> int:
        return (self.launch_time - EPOCH) // timedelta(milliseconds=1)

    @property
    def launch_duration_ms(self) -> int:
        return self.launch_duration // timedelta(milliseconds=1)


def from_epoch_ms(ms: int) -> datetime:
    return EPOCH + timedelta(milliseconds=ms)

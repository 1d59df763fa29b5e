from __future__ import annotations

from typing import Iterable, List, Tuple

from usagetrack.session import SessionRecord

MEASUREMENT = "log-session"

# (gate attribute, [(field name, attribute), ...]); a group is written whole
# when its gate is non-empty.
_OPTIONAL_GROUPS: Tuple[Tuple[str, Tuple[Tuple[str, str], ...]], ...] = (
    ("app_id", (("appId", "app_id"), ("appVersion", "app_version"))),
    ("app_locale", (("appLocale", "app_locale"),)),
    ("ngl_version", (("nglVersion", "ngl_version"),)),
    ("os_name", (("osName", "os_name"), ("osVersion", "os_version"))),
    ("user_id", (("userId", "user_id"),)),
)


def _tag(value: str) -> str:
    return value.replace("\\", "\\\\").replace(",", "\\,").replace("=", "\\=").replace(" ", "\\ ")


def _quoted(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def session_line(s: SessionRecord) -> str:
    """
    One line-protocol point for a session:
      log-session,sessionId=<id> launchDuration=<ms>,clientIp="<ip>"[,appId=..,appVersion=..]... <launch ms>
    """
    parts = [
        f"{MEASUREMENT},sessionId={_tag(s.session_id)} launchDuration={s.launch_duration_ms}",
        f"clientIp={_quoted(s.client_ip)}",
    ]
    for gate, fields in _OPTIONAL_GROUPS:
        if getattr(s, gate):
            parts.extend(f"{name}={_quoted(getattr(s, attr))}" for name, attr in fields)
    return ",".join(parts) + f" {s.launch_time_ms}"


def session_lines(sessions: Iterable[SessionRecord]) -> List[str]:
    return [session_line(s) for s in sessions]

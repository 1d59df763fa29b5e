"""
Line matchers for application log grammars.

Application logs change layout between releases, so recognition of session
markers lives here behind a small ``LineMatcher`` protocol.  The parser only
sees ``Marker`` values; supporting a new log layout means registering another
matcher in ``GRAMMARS``, not touching the parser.
"""
from __future__ import annotations

import enum
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Protocol, Tuple

from usagetrack.session import from_epoch_ms

_TS = r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(?:\.\d{1,6})?(?:Z|[+-]\d{2}:?\d{2})"
_TS_FORMATS = ("%Y-%m-%dT%H:%M:%S.%f%z", "%Y-%m-%dT%H:%M:%S%z")
_DIGITS_RE = re.compile(r"[0-9]+")


class MarkerKind(enum.Enum):
    START = "start"
    DURATION = "duration"
    AMBIENT = "ambient"
    SESSION = "session"


@dataclass(frozen=True)
class Marker:
    kind: MarkerKind
    fields: Dict[str, str] = field(default_factory=dict)
    session_id: Optional[str] = None
    launch_time: Optional[datetime] = None
    launch_duration: Optional[timedelta] = None


class LineMatcher(Protocol):
    name: str

    def match(self, line: str) -> Optional[Marker]:
        ...


def parse_timestamp(raw: str) -> Optional[datetime]:
    """ISO-8601 with offset, truncated to milliseconds. None if it doesn't parse."""
    for fmt in _TS_FORMATS:
        try:
            dt = datetime.strptime(raw, fmt)
        except ValueError:
            continue
        return dt.replace(microsecond=dt.microsecond // 1000 * 1000)
    return None


def _millis(raw: Optional[str]) -> Optional[timedelta]:
    if raw is None or not _DIGITS_RE.fullmatch(raw):
        return None
    try:
        return timedelta(milliseconds=int(raw))
    except OverflowError:
        return None


def _epoch_millis(raw: str) -> Optional[datetime]:
    if not _DIGITS_RE.fullmatch(raw):
        return None
    try:
        return from_epoch_ms(int(raw))
    except OverflowError:
        return None


# ----------------------------
# ngl-text
# ----------------------------
_TEXT_LINE_RE = re.compile(
    rf"""
    ^\s*(?P<ts>{_TS})\s
    \[(?P<level>[A-Z]+)\]\s
    (?P<component>[^|]*)\|
    (?P<message>.*)$
    """,
    re.VERBOSE,
)
_TEXT_START_RE = re.compile(r"^Session started:\s*(?P<id>\S+)$")
_TEXT_DURATION_RE = re.compile(r"^Session duration:\s*(?P<ms>\S+)\s*ms$")
_TEXT_FIELD_RE = re.compile(r"^(?P<scope>Session\s+)?(?P<label>[A-Za-z][A-Za-z ]*?):\s*(?P<value>\S.*)$")

_TEXT_LABELS = {
    "NGL Version": "ngl_version",
    "OS Name": "os_name",
    "OS Version": "os_version",
    "App ID": "app_id",
    "App Version": "app_version",
    "App Locale": "app_locale",
    "User ID": "user_id",
}


class TextGrammar:
    """
    Pipe style lines, e.g.:
      2024-05-29T14:47:19.010Z [INFO] NGL | Session started: 8d1f0c2e
      2024-05-29T14:47:19.020Z [INFO] NGL | NGL Version: 1.35.0.19
      2024-05-29T14:52:39.020Z [INFO] NGL | Session duration: 320010 ms
    A ``Session `` prefix on a field label scopes it to the open session.
    """

    name = "ngl-text"

    def match(self, line: str) -> Optional[Marker]:
        m = _TEXT_LINE_RE.match(line)
        if not m:
            return None
        message = m.group("message").strip()

        start = _TEXT_START_RE.match(message)
        if start:
            return Marker(
                MarkerKind.START,
                session_id=start.group("id"),
                launch_time=parse_timestamp(m.group("ts")),
            )

        duration = _TEXT_DURATION_RE.match(message)
        if duration:
            return Marker(MarkerKind.DURATION, launch_duration=_millis(duration.group("ms")))

        fm = _TEXT_FIELD_RE.match(message)
        if fm:
            attr = _TEXT_LABELS.get(fm.group("label"))
            if attr is None:
                return None
            kind = MarkerKind.SESSION if fm.group("scope") else MarkerKind.AMBIENT
            return Marker(kind, fields={attr: fm.group("value").strip()})
        return None


# ----------------------------
# ngl-kv
# ----------------------------
_KV_LINE_RE = re.compile(rf"^\s*(?P<ts>{_TS})\s+(?P<component>\S+)\s+(?P<rest>event=.*)$")
_KV_TOKEN_RE = re.compile(r'(?<!\S)(?P<key>[A-Za-z_][\w.]*)=(?:"(?P<quoted>(?:[^"\\]|\\.)*)"|(?P<bare>[^\s"]*))')
_KV_ESCAPE_RE = re.compile(r"\\(.)")

_KV_KEYS = {
    "nglVersion": "ngl_version",
    "osName": "os_name",
    "osVersion": "os_version",
    "appId": "app_id",
    "appVersion": "app_version",
    "appLocale": "app_locale",
    "userId": "user_id",
}
_KV_DURATION_EVENTS = ("session.engagement", "session.end")


def _kv_tokens(rest: str) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for m in _KV_TOKEN_RE.finditer(rest):
        quoted = m.group("quoted")
        if quoted is not None:
            out[m.group("key")] = _KV_ESCAPE_RE.sub(r"\1", quoted)
        else:
            out[m.group("key")] = m.group("bare")
    return out


class KeyValueGrammar:
    """
    Event lines with key=value tokens, e.g.:
      2024-06-03T09:12:00.000+02:00 NGL event=session.start sessionId=8d1f0c2e appVersion=19.3
      2024-06-03T09:12:00.100+02:00 NGL event=environment nglVersion=1.36.0.4 osName=WIN
      2024-06-03T09:20:00.000+02:00 NGL event=session.end sessionId=8d1f0c2e duration=480000
    """

    name = "ngl-kv"

    def match(self, line: str) -> Optional[Marker]:
        m = _KV_LINE_RE.match(line)
        if not m:
            return None
        tokens = _kv_tokens(m.group("rest"))
        event = tokens.get("event", "")
        fields = {_KV_KEYS[k]: v for k, v in tokens.items() if k in _KV_KEYS and v}

        if event == "session.start":
            raw = tokens.get("launchTime")
            if raw is None:
                launch_time = parse_timestamp(m.group("ts"))
            else:
                launch_time = _epoch_millis(raw)
            return Marker(
                MarkerKind.START,
                fields=fields,
                session_id=tokens.get("sessionId") or None,
                launch_time=launch_time,
            )
        if event in _KV_DURATION_EVENTS:
            return Marker(
                MarkerKind.DURATION,
                session_id=tokens.get("sessionId") or None,
                launch_duration=_millis(tokens.get("duration")),
            )
        if event == "environment":
            return Marker(MarkerKind.AMBIENT, fields=fields)
        return None


GRAMMARS: Dict[str, LineMatcher] = {
    TextGrammar.name: TextGrammar(),
    KeyValueGrammar.name: KeyValueGrammar(),
}
DEFAULT_GRAMMARS: Tuple[str, ...] = ("ngl-kv", "ngl-text")


def matchers_for(names: Iterable[str]) -> List[LineMatcher]:
    return [GRAMMARS[name] for name in names]


def match_line(line: str, matchers: Iterable[LineMatcher]) -> Optional[Marker]:
    for matcher in matchers:
        marker = matcher.match(line)
        if marker is not None:
            return marker
    return None

import argparse
import logging
import os
import sys

import uvicorn

from usagetrack.config import ConfigError, TrackerConfig
from usagetrack.grammars import DEFAULT_GRAMMARS, GRAMMARS, matchers_for
from usagetrack.line_protocol import session_line
from usagetrack.parser import parse_bytes
from usagetrack.uploader import InfluxWriter, send_sessions

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root = logging.getLogger()
    root.addHandler(handler)
    root.setLevel(level.upper())


def _load_config() -> TrackerConfig:
    try:
        return TrackerConfig.from_env().validate()
    except ConfigError as e:
        print(f"usagetrack: {e}", file=sys.stderr)
        sys.exit(2)


def main():
    host = os.getenv("TRACKER_HOST", "127.0.0.1")
    port = int(os.getenv("TRACKER_PORT", "7000"))
    reload_ = os.getenv("TRACKER_RELOAD", "0") == "1"
    log_level = os.getenv("TRACKER_LOG_LEVEL", "info")

    _load_config()
    configure_logging(log_level)
    uvicorn.run(
        "usagetrack.app:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload_,
        log_level=log_level,
    )


def parse_main(argv=None):
    ap = argparse.ArgumentParser(
        prog="usagetrack-parse",
        description="Print one line-protocol line per session found in application log files.",
    )
    ap.add_argument("files", nargs="+", help="log files to parse")
    ap.add_argument("--client-ip", default="127.0.0.1", help="address stamped on every session")
    ap.add_argument(
        "--grammar",
        action="append",
        choices=sorted(GRAMMARS),
        help="log grammar to try (repeatable, default: %s)" % ",".join(DEFAULT_GRAMMARS),
    )
    ap.add_argument(
        "--upload",
        action="store_true",
        help="also write the sessions to the InfluxDB configured by TRACKER_URL/DB/RP/TOKEN",
    )
    ap.add_argument("-v", "--verbose", action="store_true")
    args = ap.parse_args(argv)

    configure_logging("debug" if args.verbose else "warning")
    writer = None
    if args.upload:
        config = _load_config()
        if not config.uploads_enabled:
            print("usagetrack-parse: --upload needs TRACKER_URL", file=sys.stderr)
            return 2
        writer = InfluxWriter(
            config.endpoint,
            config.database,
            config.policy,
            config.token,
            timeout=config.timeout_s,
            start_worker=False,
        )

    matchers = matchers_for(args.grammar or DEFAULT_GRAMMARS)
    found = 0
    failed = False
    for path in args.files:
        try:
            with open(path, "rb") as f:
                body = f.read()
        except OSError as e:
            print(f"usagetrack-parse: {e}", file=sys.stderr)
            return 1
        sessions = parse_bytes(body, args.client_ip, matchers)
        for session in sessions:
            print(session_line(session))
        found += len(sessions)
        if writer is not None and not send_sessions(writer, sessions):
            print(f"usagetrack-parse: upload of sessions from {path} failed", file=sys.stderr)
            failed = True
    logging.getLogger(__name__).info("%d session(s) in %d file(s)", found, len(args.files))
    return 1 if failed else 0

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple
from urllib.parse import urlsplit

from usagetrack.client_address import HOPS
from usagetrack.grammars import DEFAULT_GRAMMARS, GRAMMARS

DEFAULT_MAX_BODY_BYTES = 16 * 1024 * 1024


class ConfigError(ValueError):
    pass


def _split_names(raw: str) -> Tuple[str, ...]:
    return tuple(p.strip() for p in raw.split(",") if p.strip())


def _split_url(url: str):
    try:
        return urlsplit(url)
    except ValueError as e:
        raise ConfigError(f"{url!r} is not a valid url: {e}") from e


@dataclass(frozen=True)
class TrackerConfig:
    # InfluxDB v1 write API; uploads are disabled while endpoint is empty
    endpoint: str = ""
    database: str = ""
    policy: str = ""
    token: str = ""
    timeout_s: float = 5.0

    client_ip_header: Optional[str] = None
    client_ip_hop: str = "first"

    upstream_url: Optional[str] = None
    max_body_bytes: int = DEFAULT_MAX_BODY_BYTES
    grammars: Tuple[str, ...] = DEFAULT_GRAMMARS

    @property
    def uploads_enabled(self) -> bool:
        return bool(self.endpoint)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "TrackerConfig":
        env = os.environ if env is None else env
        try:
            timeout_s = float(env.get("TRACKER_TIMEOUT_S", "5.0"))
            max_body = int(env.get("TRACKER_MAX_BODY_BYTES", str(DEFAULT_MAX_BODY_BYTES)))
        except ValueError as e:
            raise ConfigError(f"invalid numeric setting: {e}") from e
        grammars = _split_names(env.get("TRACKER_GRAMMARS", "")) or DEFAULT_GRAMMARS
        return cls(
            endpoint=env.get("TRACKER_URL", "").strip(),
            database=env.get("TRACKER_DB", "").strip(),
            policy=env.get("TRACKER_RP", "").strip(),
            token=env.get("TRACKER_TOKEN", "").strip(),
            timeout_s=timeout_s,
            client_ip_header=env.get("TRACKER_CLIENT_IP_HEADER", "").strip() or None,
            client_ip_hop=env.get("TRACKER_CLIENT_IP_HOP", "first").strip().lower(),
            upstream_url=env.get("TRACKER_UPSTREAM_URL", "").strip() or None,
            max_body_bytes=max_body,
            grammars=grammars,
        )

    def validate(self) -> "TrackerConfig":
        if self.endpoint:
            u = _split_url(self.endpoint)
            if u.scheme != "https":
                raise ConfigError(f"The endpoint protocol must be https, not '{u.scheme}'")
            if not u.hostname:
                raise ConfigError(f"The endpoint {self.endpoint!r} is missing a hostname")
            if u.path not in ("", "/") or u.query or u.fragment:
                raise ConfigError(f"The endpoint {self.endpoint!r} cannot have a path, query, or fragment portion")
            if not self.database:
                raise ConfigError("A database must be specified")
            if not self.policy:
                raise ConfigError("A retention policy must be specified")
            if not self.token:
                raise ConfigError("A token must be specified")
        elif self.database or self.policy or self.token:
            raise ConfigError("An endpoint URL must be specified")
        if self.timeout_s <= 0:
            raise ConfigError("The upload timeout must be positive")
        if self.client_ip_hop not in HOPS:
            raise ConfigError(f"The client IP hop must be one of {', '.join(HOPS)}, not {self.client_ip_hop!r}")
        if self.upstream_url:
            u = _split_url(self.upstream_url)
            if u.scheme not in ("http", "https") or not u.hostname:
                raise ConfigError(f"{self.upstream_url!r} is not a valid upstream url")
        if self.max_body_bytes <= 0:
            raise ConfigError("The maximum body size must be positive")
        if not self.grammars:
            raise ConfigError("At least one log grammar must be specified")
        unknown = [g for g in self.grammars if g not in GRAMMARS]
        if unknown:
            raise ConfigError(f"Unknown log grammar(s): {', '.join(unknown)}")
        return self

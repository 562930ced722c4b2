from __future__ import annotations

# Runtime settings.
#
# Values come from the environment (optionally a `.env` file next to where the
# service is started) and can be overridden by CLI flags. Every CLI uses
# `Settings.from_env()` for its argparse defaults.

import logging
import os
from dataclasses import dataclass
from typing import Mapping

from dotenv import find_dotenv, load_dotenv

from .topics import DEFAULT_NAMESPACE

LOG_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"


@dataclass(frozen=True)
class Settings:
    mqtt_host: str = "127.0.0.1"
    mqtt_port: int = 1883
    namespace: str = DEFAULT_NAMESPACE
    database_url: str = "sqlite:///./data/hospital.db"
    observer_idle_seconds: float = 120.0
    observer_backlog: int = 256
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "Settings":
        """Read `HQ_*` variables. Missing ones keep their defaults."""
        if env is None:
            load_dotenv(find_dotenv(usecwd=True))
            env = os.environ

        d = cls()
        settings = cls(
            mqtt_host=env.get("HQ_MQTT_HOST", d.mqtt_host),
            mqtt_port=_int(env, "HQ_MQTT_PORT", d.mqtt_port),
            namespace=env.get("HQ_NAMESPACE", d.namespace).rstrip("/"),
            database_url=env.get("HQ_DATABASE_URL", d.database_url),
            observer_idle_seconds=_float(env, "HQ_OBSERVER_IDLE_SECONDS", d.observer_idle_seconds),
            observer_backlog=_int(env, "HQ_OBSERVER_BACKLOG", d.observer_backlog),
            log_level=env.get("HQ_LOG_LEVEL", d.log_level).upper(),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        if not 0 < self.mqtt_port < 65536:
            raise ValueError("mqtt_port must be in 1..65535")
        if not self.namespace:
            raise ValueError("namespace must not be empty")
        if self.observer_idle_seconds <= 0:
            raise ValueError("observer_idle_seconds must be > 0")
        if self.observer_backlog <= 0:
            raise ValueError("observer_backlog must be > 0")
        if logging.getLevelName(self.log_level) == f"Level {self.log_level}":
            raise ValueError(f"unknown log level {self.log_level!r}")


def _int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{key} must be an integer, got {raw!r}") from None


def _float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{key} must be a number, got {raw!r}") from None


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)

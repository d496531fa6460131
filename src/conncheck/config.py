"""Checker configuration — JSON file, environment, then CLI overrides."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from conncheck.network.peer import DEFAULT_CHECK_INTERVAL_MS, DEFAULT_CONNECTION_TIMEOUT_MS

ENV_PORT = "CONNCHECK_PORT"
ENV_METADATA = "CONNCHECK_METADATA"
ENV_CHECK_INTERVAL_MS = "CONNCHECK_CHECK_INTERVAL_MS"


@dataclass
class CheckerConfig:
    """Settings for one checker process."""

    host: str = "0.0.0.0"
    port: int = 80
    metadata: str = ""  # File path or http(s) URL of the directory document
    check_interval_ms: int = DEFAULT_CHECK_INTERVAL_MS
    connection_timeout_ms: int = DEFAULT_CONNECTION_TIMEOUT_MS
    metadata_refresh_interval: float = 10.0

    def __post_init__(self) -> None:
        if self.check_interval_ms <= 0:
            raise ValueError(f"check_interval_ms must be positive, got {self.check_interval_ms}")
        if self.connection_timeout_ms <= 0:
            raise ValueError(
                f"connection_timeout_ms must be positive, got {self.connection_timeout_ms}"
            )
        if self.metadata_refresh_interval <= 0:
            raise ValueError(
                f"metadata_refresh_interval must be positive, got {self.metadata_refresh_interval}"
            )

    @property
    def metadata_is_url(self) -> bool:
        return self.metadata.startswith(("http://", "https://"))


def load_config(
    config_path: str | None,
    overrides: dict[str, Any] | None = None,
    environ: dict[str, str] | None = None,
) -> CheckerConfig:
    """Build a config from an optional JSON file.

    Precedence, lowest first: defaults, the file, environment variables,
    then ``overrides`` (typically parsed CLI flags; ``None`` values ignored).

    Raises:
        FileNotFoundError: If ``config_path`` is given but missing.
        ValueError: If a value is out of range.
    """
    raw: dict[str, Any] = {}
    if config_path:
        path = Path(config_path).resolve()
        if not path.exists():
            raise FileNotFoundError(f"config file not found: {path}")
        with open(path) as f:
            raw = json.load(f)

    env = os.environ if environ is None else environ
    if env.get(ENV_PORT):
        raw["port"] = int(env[ENV_PORT])
    if env.get(ENV_METADATA):
        raw["metadata"] = env[ENV_METADATA]
    if env.get(ENV_CHECK_INTERVAL_MS):
        raw["check_interval_ms"] = int(env[ENV_CHECK_INTERVAL_MS])

    for key, value in (overrides or {}).items():
        if value is not None:
            raw[key] = value

    return CheckerConfig(
        host=raw.get("host", "0.0.0.0"),
        port=int(raw.get("port", 80)),
        metadata=raw.get("metadata", ""),
        check_interval_ms=int(raw.get("check_interval_ms", DEFAULT_CHECK_INTERVAL_MS)),
        connection_timeout_ms=int(
            raw.get("connection_timeout_ms", DEFAULT_CONNECTION_TIMEOUT_MS)
        ),
        metadata_refresh_interval=float(raw.get("metadata_refresh_interval", 10.0)),
    )

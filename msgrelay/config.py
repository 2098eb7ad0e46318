from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional, Tuple, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

log = logging.getLogger("msgrelay.config")

CONFIG_ENV = "MSGRELAY_CONFIG"
DEFAULT_CONFIG_PATH = Path("configs/server.yaml")


def parse_listen(value: str) -> Tuple[str, int]:
    """Split ``host:port``; raises ValueError on anything else."""

    if not isinstance(value, str) or ":" not in value:
        raise ValueError(f"expected host:port, got {value!r}")
    host, port = value.rsplit(":", 1)
    if not host or not port.isdigit() or not 0 <= int(port) <= 65535:
        raise ValueError(f"expected host:port, got {value!r}")
    return host, int(port)


class ServerConfig(BaseModel):
    """Relay server settings, usually loaded from YAML."""

    listen: str = "0.0.0.0:5000"
    ws_listen: Optional[str] = None
    db_path: str = "msgrelay.db"
    max_sessions: int = Field(default=50, ge=1)
    admission_timeout: float = Field(default=5.0, ge=0)
    mailbox_size: int = Field(default=256, ge=1)
    drain_timeout: float = Field(default=2.0, ge=0)
    write_timeout: float = Field(default=10.0, gt=0)
    max_line_bytes: int = Field(default=65536, ge=256)
    lock_shards: int = Field(default=64, ge=1)
    log_level: str = "INFO"

    model_config = ConfigDict(extra="forbid")

    @field_validator("listen", "ws_listen")
    @classmethod
    def _host_port(cls, value: Optional[str]) -> Optional[str]:
        if value is not None:
            parse_listen(value)
        return value

    @field_validator("log_level")
    @classmethod
    def _level_name(cls, value: str) -> str:
        name = value.upper()
        if not isinstance(logging.getLevelName(name), int):
            raise ValueError(f"unknown log level {value!r}")
        return name


def load_config(path: Union[str, Path, None] = None) -> ServerConfig:
    """Load settings from ``path``, ``$MSGRELAY_CONFIG`` or configs/server.yaml.

    A missing file yields the defaults.
    """

    if path is None:
        path = os.environ.get(CONFIG_ENV) or DEFAULT_CONFIG_PATH
    path = Path(path)
    if not path.exists():
        log.info("No config at %s; using defaults", path)
        return ServerConfig()
    data = yaml.safe_load(path.read_text()) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a mapping at top level")
    return ServerConfig(**data)


__all__ = ["ServerConfig", "load_config", "parse_listen", "CONFIG_ENV"]

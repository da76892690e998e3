"""Collector settings, read from CROSSSHOT_* environment variables."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path

logger = logging.getLogger(__name__)

ENV_PREFIX = "CROSSSHOT_"
SERVICE_NAME = "CrossShot Desktop"


def _load_root_env() -> None:
    """Load environment variables from repository root .env if present."""
    root_env = Path(__file__).resolve().parent.parent / ".env"
    if not root_env.exists():
        return
    for raw in root_env.read_text(encoding="utf-8").splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        if line.startswith("export "):
            line = line[len("export "):].strip()
            if "=" not in line:
                continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not key or key in os.environ:
            continue
        value = value.strip()
        if (value.startswith('"') and value.endswith('"')) or (
            value.startswith("'") and value.endswith("'")
        ):
            value = value[1:-1]
        os.environ[key] = value


def _default_storage_dir() -> Path:
    return Path.home() / ".crossshot" / "screenshots"


@dataclass
class Settings:
    host: str = "0.0.0.0"
    port: int = 8080
    storage_dir: Path = field(default_factory=_default_storage_dir)
    max_upload_bytes: int = 15 * 1024 * 1024
    heartbeat_timeout: float = 15.0
    sweep_interval: float = 5.0
    # 0 keeps proxy connections open until the peer disconnects.
    proxy_idle_timeout: float = 0.0
    service_name: str = SERVICE_NAME
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        self.storage_dir = Path(self.storage_dir).expanduser()

    @property
    def snapshot_path(self) -> Path:
        return self.storage_dir / "screenshots.json"

    def apply_env(self, environ: dict[str, str] | None = None) -> "Settings":
        """Override fields from CROSSSHOT_<FIELD> variables.

        Values that fail to convert are logged and the current value is kept.
        """
        env = os.environ if environ is None else environ
        converters = {
            "host": str,
            "port": int,
            "storage_dir": lambda v: Path(v).expanduser(),
            "max_upload_bytes": int,
            "heartbeat_timeout": float,
            "sweep_interval": float,
            "proxy_idle_timeout": float,
            "service_name": str,
            "log_level": str,
        }
        for f in fields(self):
            raw = env.get(f"{ENV_PREFIX}{f.name.upper()}")
            if raw is None:
                continue
            try:
                setattr(self, f.name, converters[f.name](raw))
            except ValueError:
                logger.warning("Ignoring invalid %s%s=%r", ENV_PREFIX, f.name.upper(), raw)
        return self


def load_settings() -> Settings:
    _load_root_env()
    return Settings().apply_env()

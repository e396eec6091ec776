from __future__ import annotations

import json
import logging
import os
import uuid
from pathlib import Path
from typing import Any

from pos_sync.domain.models import SyncConfig

logger = logging.getLogger(__name__)


def resolve_appdata_dir() -> Path:
    env_dir = os.environ.get("LOCALAPPDATA")
    if env_dir:
        base_dir = Path(env_dir)
    else:
        base_dir = Path.home() / ".local" / "share"
    return base_dir / "PosSync"


class SyncConfigStore:
    def __init__(self, base_dir: Path | None = None) -> None:
        self._base_dir = base_dir or resolve_appdata_dir()
        self._config_path = self._base_dir / "config.json"

    @property
    def config_path(self) -> Path:
        return self._config_path

    def load(self) -> SyncConfig | None:
        if not self._config_path.exists():
            return None
        try:
            payload = json.loads(self._config_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.exception("No se pudo leer config.json: %s", exc)
            return None
        if not isinstance(payload, dict):
            logger.error("config.json no contiene un objeto JSON")
            return None
        server_url = str(payload.get("server_url", "")).strip()
        device_id = str(payload.get("device_id", "")).strip()
        if not device_id:
            device_id = self._generate_device_id()
            payload["device_id"] = device_id
            self._write_payload(payload)
        if not server_url:
            return None
        return SyncConfig(
            server_url=server_url,
            api_token=str(payload.get("api_token", "")).strip(),
            device_id=device_id,
            sync_interval_seconds=_as_number(payload.get("sync_interval_seconds"), float, 30.0),
            batch_size=_as_number(payload.get("batch_size"), int, 50),
            max_attempts=_as_number(payload.get("max_attempts"), int, 8),
        )

    def save(self, config: SyncConfig) -> SyncConfig:
        payload = {
            "server_url": config.server_url,
            "api_token": config.api_token,
            "device_id": config.device_id or self._existing_device_id() or self._generate_device_id(),
            "sync_interval_seconds": config.sync_interval_seconds,
            "batch_size": config.batch_size,
            "max_attempts": config.max_attempts,
        }
        self._write_payload(payload)
        return SyncConfig(
            server_url=payload["server_url"],
            api_token=payload["api_token"],
            device_id=payload["device_id"],
            sync_interval_seconds=config.sync_interval_seconds,
            batch_size=config.batch_size,
            max_attempts=config.max_attempts,
        )

    def _existing_device_id(self) -> str | None:
        if not self._config_path.exists():
            return None
        try:
            payload = json.loads(self._config_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return None
        value = str(payload.get("device_id", "")).strip() if isinstance(payload, dict) else ""
        return value or None

    def _write_payload(self, payload: dict[str, Any]) -> None:
        self._config_path.parent.mkdir(parents=True, exist_ok=True)
        self._config_path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")

    @staticmethod
    def _generate_device_id() -> str:
        return str(uuid.uuid4())


def _as_number(value: Any, cast: type, default):
    if value is None:
        return default
    try:
        return cast(value)
    except (TypeError, ValueError):
        return default

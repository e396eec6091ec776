from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, replace
from pathlib import Path

from pos_sync.domain.models import SyncConfig

ENV_PREFIX = "POS_SYNC_"


def project_root() -> Path:
    return Path(__file__).resolve().parents[2]


def resolve_log_dir() -> Path:
    candidates: list[Path] = []
    env_dir = os.environ.get(f"{ENV_PREFIX}LOG_DIR")
    if env_dir:
        candidates.append(Path(env_dir))
    candidates.append(project_root() / "logs")
    candidates.append(Path(tempfile.gettempdir()) / "PosSync" / "logs")

    for candidate in candidates:
        try:
            candidate.mkdir(parents=True, exist_ok=True)
            test_file = candidate / "_write_test.tmp"
            test_file.write_text("ok", encoding="utf-8")
            test_file.unlink(missing_ok=True)
            return candidate
        except OSError:
            continue

    fallback = project_root()
    fallback.mkdir(parents=True, exist_ok=True)
    return fallback


@dataclass(frozen=True)
class SyncSettings:
    server_url: str = ""
    api_token: str = ""
    device_id: str = ""
    db_path: Path | None = None
    sync_interval_seconds: float = 30.0
    batch_size: int = 50
    max_workers: int = 4
    request_timeout_seconds: float = 30.0
    base_retry_delay_seconds: float = 1.0
    max_retry_delay_seconds: float = 300.0
    max_attempts: int = 8
    connectivity_check_seconds: float = 5.0

    @property
    def is_configured(self) -> bool:
        return bool(self.server_url)


def _env_str(name: str) -> str | None:
    value = os.environ.get(f"{ENV_PREFIX}{name}")
    if value is None or not value.strip():
        return None
    return value.strip()


def _env_number(name: str, cast: type, default):
    raw_value = _env_str(name)
    if raw_value is None:
        return default
    try:
        return cast(raw_value)
    except ValueError:
        return default


def load_settings(config: SyncConfig | None = None) -> SyncSettings:
    """Combina config.json con overrides ``POS_SYNC_*`` (el entorno manda)."""
    settings = SyncSettings()
    if config is not None:
        settings = replace(
            settings,
            server_url=config.server_url,
            api_token=config.api_token,
            device_id=config.device_id,
            sync_interval_seconds=config.sync_interval_seconds,
            batch_size=config.batch_size,
            max_attempts=config.max_attempts,
        )
    db_path = _env_str("DB_PATH")
    return replace(
        settings,
        server_url=_env_str("SERVER_URL") or settings.server_url,
        api_token=_env_str("API_TOKEN") or settings.api_token,
        device_id=_env_str("DEVICE_ID") or settings.device_id,
        db_path=Path(db_path) if db_path else settings.db_path,
        sync_interval_seconds=_env_number("INTERVAL_SECONDS", float, settings.sync_interval_seconds),
        batch_size=_env_number("BATCH_SIZE", int, settings.batch_size),
        max_workers=_env_number("MAX_WORKERS", int, settings.max_workers),
        request_timeout_seconds=_env_number("REQUEST_TIMEOUT_SECONDS", float, settings.request_timeout_seconds),
        max_attempts=_env_number("MAX_ATTEMPTS", int, settings.max_attempts),
    )

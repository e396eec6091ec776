from __future__ import annotations

from pathlib import Path

from pos_sync.bootstrap import settings
from pos_sync.domain.models import SyncConfig


def test_resolve_log_dir_uses_env_path(monkeypatch, tmp_path) -> None:
    env_dir = tmp_path / "env_logs"
    monkeypatch.setenv("POS_SYNC_LOG_DIR", str(env_dir))

    resolved = settings.resolve_log_dir()

    assert resolved == env_dir
    assert resolved.exists()


def test_resolve_log_dir_falls_back_to_project_root(monkeypatch, tmp_path) -> None:
    project_root = tmp_path / "project"
    monkeypatch.delenv("POS_SYNC_LOG_DIR", raising=False)
    monkeypatch.setattr(settings, "project_root", lambda: project_root)
    monkeypatch.setattr(settings.tempfile, "gettempdir", lambda: str(tmp_path / "tmpbase"))

    original_mkdir = Path.mkdir

    def failing_candidate_mkdir(self: Path, parents: bool = False, exist_ok: bool = False):
        if self in {project_root / "logs", tmp_path / "tmpbase" / "PosSync" / "logs"}:
            raise OSError("cannot create candidate")
        return original_mkdir(self, parents=parents, exist_ok=exist_ok)

    monkeypatch.setattr(Path, "mkdir", failing_candidate_mkdir)

    resolved = settings.resolve_log_dir()

    assert resolved == project_root
    assert resolved.exists()


def _clear_env(monkeypatch) -> None:
    for name in (
        "SERVER_URL",
        "API_TOKEN",
        "DEVICE_ID",
        "DB_PATH",
        "INTERVAL_SECONDS",
        "BATCH_SIZE",
        "MAX_WORKERS",
        "REQUEST_TIMEOUT_SECONDS",
        "MAX_ATTEMPTS",
    ):
        monkeypatch.delenv(f"{settings.ENV_PREFIX}{name}", raising=False)


def test_load_settings_sin_config_no_esta_configurado(monkeypatch) -> None:
    _clear_env(monkeypatch)

    loaded = settings.load_settings(None)

    assert loaded.is_configured is False
    assert loaded.batch_size == 50
    assert loaded.max_attempts == 8


def test_load_settings_toma_config_json(monkeypatch) -> None:
    _clear_env(monkeypatch)
    config = SyncConfig(
        server_url="https://pos.example",
        api_token="tok",
        device_id="dev-1",
        sync_interval_seconds=60.0,
        batch_size=20,
        max_attempts=5,
    )

    loaded = settings.load_settings(config)

    assert loaded.is_configured
    assert loaded.device_id == "dev-1"
    assert loaded.sync_interval_seconds == 60.0
    assert loaded.batch_size == 20
    assert loaded.max_attempts == 5


def test_load_settings_el_entorno_manda_sobre_config(monkeypatch, tmp_path) -> None:
    _clear_env(monkeypatch)
    monkeypatch.setenv("POS_SYNC_SERVER_URL", "https://otro.example")
    monkeypatch.setenv("POS_SYNC_BATCH_SIZE", "10")
    monkeypatch.setenv("POS_SYNC_DB_PATH", str(tmp_path / "pos.db"))
    monkeypatch.setenv("POS_SYNC_MAX_WORKERS", "no-es-numero")
    config = SyncConfig(server_url="https://pos.example", api_token="tok", device_id="dev-1")

    loaded = settings.load_settings(config)

    assert loaded.server_url == "https://otro.example"
    assert loaded.api_token == "tok"
    assert loaded.batch_size == 10
    assert loaded.db_path == tmp_path / "pos.db"
    assert loaded.max_workers == 4

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class SyncConfig:
    """Configuración persistida del cliente de sincronización.

    ``device_id`` identifica la instalación; se genera una única vez y no se
    reescribe aunque cambie el servidor, porque el servidor lo usa como
    ``X-Client-ID`` para deduplicar creaciones reenviadas.
    """

    server_url: str
    api_token: str
    device_id: str
    sync_interval_seconds: float = 30.0
    batch_size: int = 50
    max_attempts: int = 8

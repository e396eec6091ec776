from __future__ import annotations

from typing import Any


class AppError(Exception):
    pass


class BusinessError(AppError):
    pass


class ValidationError(BusinessError):
    pass


class InfraError(AppError):
    pass


class PersistenceError(InfraError):
    pass


class ExternalServiceError(InfraError):
    pass


class TransientExternalError(ExternalServiceError):
    pass


class NetworkUnavailable(TransientExternalError):
    """Red caída, timeout o 5xx: se reintenta con backoff sin tocar estado."""


class AuthenticationRequired(ExternalServiceError):
    """El servidor pide credenciales; la entrada sigue en cola sin contar intento."""


class ServerRejected(ExternalServiceError):
    """Rechazo definitivo (validación/forma). El registro queda en ``failed``."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class SyncConflictError(ExternalServiceError):
    """El servidor informa de un conflicto (409); se deriva al resolvedor."""

    def __init__(self, message: str, *, conflicts: tuple[Any, ...] = ()) -> None:
        super().__init__(message)
        self.conflicts = conflicts


class LocalStorageCorruption(PersistenceError):
    """Fila local ilegible. Afecta sólo al registro indicado."""

    def __init__(self, table: str, record_id: str, reason: str) -> None:
        super().__init__(f"Registro local corrupto {table}/{record_id}: {reason}")
        self.table = table
        self.record_id = record_id


class IdentityMismatch(AppError):
    """Invariante de reconciliación de identidades violado. Aborta el ciclo."""


class SyncCancelledError(AppError):
    """Error lanzado cuando una sincronización se cancela explícitamente."""

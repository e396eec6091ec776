from __future__ import annotations

import argparse
import faulthandler
import json
import logging
import sys
import threading
from dataclasses import replace
from pathlib import Path
from typing import Any

from pos_sync.bootstrap.container import AppContainer, build_container
from pos_sync.bootstrap.exception_handler import manejar_excepcion_global
from pos_sync.bootstrap.logging import configure_logging, install_exception_hook
from pos_sync.bootstrap.settings import SyncSettings, load_settings, resolve_log_dir
from pos_sync.core.errors import AppError
from pos_sync.infrastructure.db import get_connection
from pos_sync.infrastructure.local_config import SyncConfigStore
from pos_sync.infrastructure.migrations import execute_command

LOG_DIR: Path | None = None

logger = logging.getLogger(__name__)


def _write_json(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, ensure_ascii=False, indent=2, default=str) + "\n")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Sincronización offline-first del punto de venta")
    parser.add_argument("--db", help="Ruta de la base SQLite local")
    parser.add_argument("--verbose", action="store_true", help="Log también por consola")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("sync", help="Ejecuta un ciclo de sincronización ahora")
    commands.add_parser("status", help="Muestra contadores y estado de la cola")

    conflicts = commands.add_parser("conflicts", help="Lista o resuelve conflictos abiertos")
    conflicts.add_argument("--resolve", type=int, metavar="ID", help="Id del conflicto a resolver")
    conflicts.add_argument("--all", action="store_true", help="Resuelve todos los conflictos abiertos")
    conflicts.add_argument("--keep", choices=["client", "server"], help="Versión que se conserva")

    commands.add_parser("retry-failed", help="Reencola todo lo fallido o rechazado")

    force = commands.add_parser("force", help="Fuerza el reenvío de un registro")
    force.add_argument("table")
    force.add_argument("record_id")

    migrate = commands.add_parser("migrate", help="Gestiona migraciones")
    migrate.add_argument("action", choices=["up", "down", "status"])
    migrate.add_argument("--steps", type=int, default=1)

    commands.add_parser("run", help="Planificador en primer plano hasta Ctrl-C")
    return parser


def _settings_from(args: argparse.Namespace) -> SyncSettings:
    settings = load_settings(SyncConfigStore().load())
    if args.db:
        settings = replace(settings, db_path=Path(args.db))
    return settings


def _require_coordinator(container: AppContainer):
    if container.coordinator is None:
        raise AppError("Servidor de sincronización no configurado (config.json o POS_SYNC_SERVER_URL)")
    return container.coordinator


def _cmd_sync(container: AppContainer, args: argparse.Namespace) -> int:
    report = _require_coordinator(container).request_sync()
    if report is None:
        sys.stdout.write("Ya hay un ciclo en curso; se ejecutará un ciclo de seguimiento.\n")
        return 0
    _write_json(report.to_dict())
    return 0 if report.status.value in ("success", "partial") else 2


def _cmd_status(container: AppContainer, args: argparse.Namespace) -> int:
    _write_json(container.status_service.get_detailed_status().to_dict())
    return 0


def _cmd_conflicts(container: AppContainer, args: argparse.Namespace) -> int:
    service = container.conflicts_service
    if args.resolve is not None or args.all:
        if not args.keep:
            sys.stderr.write("--keep es obligatorio al resolver\n")
            return 2
        if args.all:
            sys.stdout.write(f"Conflictos resueltos: {service.resolve_all(args.keep)}\n")
        else:
            service.resolve_conflict(args.resolve, args.keep)
            sys.stdout.write(f"Conflicto {args.resolve} resuelto ({args.keep})\n")
        return 0
    _write_json(
        [
            {
                "id": conflict.id,
                "table": conflict.table,
                "record_id": conflict.record_id,
                "fields": list(conflict.conflicting_fields),
                "detected_at": conflict.detected_at,
                "client_data": conflict.client_data,
                "server_data": conflict.server_data,
            }
            for conflict in service.list_conflicts()
        ]
    )
    return 0


def _cmd_retry_failed(container: AppContainer, args: argparse.Namespace) -> int:
    sys.stdout.write(f"Entradas reencoladas: {container.status_service.retry_failed()}\n")
    return 0


def _cmd_force(container: AppContainer, args: argparse.Namespace) -> int:
    forced = container.status_service.force_sync(args.table, args.record_id)
    if forced is None:
        sys.stderr.write("Nada que forzar para ese registro\n")
        return 1
    sys.stdout.write(f"Entrada {forced.id} lista para el próximo ciclo\n")
    return 0


def _cmd_run(container: AppContainer, args: argparse.Namespace) -> int:
    _require_coordinator(container)
    assert container.scheduler is not None
    container.scheduler.start()
    stop = threading.Event()
    try:
        while not stop.wait(1.0):
            pass
    except KeyboardInterrupt:
        logger.info("Interrumpido por el usuario")
    return 0


_COMMANDS = {
    "sync": _cmd_sync,
    "status": _cmd_status,
    "conflicts": _cmd_conflicts,
    "retry-failed": _cmd_retry_failed,
    "force": _cmd_force,
    "run": _cmd_run,
}


def main(argv: list[str] | None = None) -> int:
    global LOG_DIR
    args = build_parser().parse_args(argv)

    LOG_DIR = resolve_log_dir()
    configure_logging(LOG_DIR, console=args.verbose)
    install_exception_hook(LOG_DIR)
    faulthandler.enable()
    logger.info("Log dir: %s", LOG_DIR)

    settings = _settings_from(args)
    if args.command == "migrate":
        connection = get_connection(settings.db_path)
        try:
            _write_json(execute_command(connection, args.action, steps=args.steps))
        finally:
            connection.close()
        return 0

    container = build_container(settings)
    try:
        return _COMMANDS[args.command](container, args)
    except AppError as exc:
        logger.error("Comando %s fallido: %s", args.command, exc)
        sys.stderr.write(str(exc) + "\n")
        return 1
    finally:
        container.close()


if __name__ == "__main__":
    try:
        raise SystemExit(main())
    except Exception:  # noqa: BLE001
        exc_type, exc, tb = sys.exc_info()
        assert exc_type is not None and exc is not None
        incident_id = manejar_excepcion_global(exc_type, exc, tb)
        sys.stderr.write(f"Se produjo un error interno ({incident_id}). Revisa el archivo de logs para más detalles.\n")
        raise

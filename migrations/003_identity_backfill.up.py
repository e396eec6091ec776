from __future__ import annotations

import sqlite3
from datetime import datetime, timezone

SYNC_TABLES = (
    "categories",
    "products",
    "customers",
    "imei_inventory",
    "product_batches",
    "trade_ins",
    "sales",
    "repair_orders",
)


def run(connection: sqlite3.Connection) -> None:
    """Registra en identity_map los pares client/server ya presentes en las tablas."""
    mapped_at = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
    cursor = connection.cursor()
    for table in SYNC_TABLES:
        cursor.execute(
            f"""
            INSERT OR IGNORE INTO identity_map (table_name, client_id, server_id, mapped_at)
            SELECT ?, client_id, server_id, ?
            FROM {table}
            WHERE server_id IS NOT NULL AND client_id <> server_id
            """,
            (table, mapped_at),
        )

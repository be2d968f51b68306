from __future__ import annotations

import sqlite3

from keysync.infra.store.db import transaction

SCHEMA_VERSION = 1


def ensure_keyring_schema(conn: sqlite3.Connection) -> int:
    """
    Назначение:
        Создать таблицы связки (meta, keys, user_ids) и вернуть версию схемы.
    """
    with transaction(conn):
        _create_meta(conn)
        current_version = _get_schema_version(conn) or 0
        if current_version == 0:
            _create_key_tables(conn)
            _set_schema_version(conn, SCHEMA_VERSION)
            return SCHEMA_VERSION
    return current_version


def _create_meta(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS meta (
            key TEXT PRIMARY KEY,
            value TEXT
        )
        """
    )


def _create_key_tables(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS keys (
            fingerprint TEXT NOT NULL,
            secret INTEGER NOT NULL,
            key_id TEXT NOT NULL,
            block BLOB NOT NULL,
            imported_at TEXT NOT NULL,
            PRIMARY KEY (fingerprint, secret)
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_keys_key_id ON keys(key_id)")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS user_ids (
            fingerprint TEXT NOT NULL,
            secret INTEGER NOT NULL,
            position INTEGER NOT NULL,
            uid TEXT NOT NULL,
            PRIMARY KEY (fingerprint, secret, position),
            FOREIGN KEY (fingerprint, secret) REFERENCES keys(fingerprint, secret) ON DELETE CASCADE
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_user_ids_uid ON user_ids(uid)")


def _get_schema_version(conn: sqlite3.Connection) -> int | None:
    row = conn.execute("SELECT value FROM meta WHERE key='schema_version'").fetchone()
    if row is None:
        return None
    try:
        return int(row[0])
    except (TypeError, ValueError):
        return None


def _set_schema_version(conn: sqlite3.Connection, version: int) -> None:
    conn.execute(
        """
        INSERT INTO meta(key, value)
        VALUES (?, ?)
        ON CONFLICT(key) DO UPDATE SET value=excluded.value
        """,
        ("schema_version", str(version)),
    )

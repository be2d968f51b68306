from __future__ import annotations

import sqlite3
from dataclasses import replace
from typing import Any, Iterable

from keysync.common.time import getNowIso
from keysync.domain.exceptions import KeyStoreError
from keysync.domain.keys.adapter import fingerprint_key
from keysync.domain.models import KeyDescriptor, KeyRecord, KeyType
from keysync.domain.ports.key_codec import KeyBlockCodecProtocol
from keysync.domain.ports.local_store import LocalKeyStoreProtocol, UidMatcher
from keysync.infra.store.db import transaction


def _secret_filter(key_type: KeyType | None) -> tuple[int, ...]:
    if key_type == KeyType.PRIVATE:
        return (1,)
    if key_type == KeyType.ALL:
        return (0, 1)
    return (0,)


class SqliteKeyStore(LocalKeyStoreProtocol):
    """
    Назначение/ответственность:
        Локальная связка ключей в SQLite (таблицы keys + user_ids).

    Ограничения:
        - key_type=None эквивалентен PUBLIC.
        - Возвращаемые записи принадлежат хранилищу: serialized=None.
        - Шифрование хранилища паролем не поддерживается, passphrase игнорируется.
        - sqlite3.Error оборачивается в KeyStoreError.
    """

    def __init__(self, conn: sqlite3.Connection, codec: KeyBlockCodecProtocol):
        self.conn = conn
        self.codec = codec

    # --- read ---

    def search_key(self, uid: str, key_type: KeyType | None = None) -> list[KeyRecord]:
        secrets = _secret_filter(key_type)
        if uid:
            sql = (
                "SELECT DISTINCT k.fingerprint, k.secret FROM keys k "
                "JOIN user_ids u ON u.fingerprint = k.fingerprint AND u.secret = k.secret "
                f"WHERE u.uid = ? AND k.secret IN ({','.join('?' * len(secrets))}) "
                "ORDER BY k.imported_at, k.fingerprint"
            )
            rows = self._fetchall(sql, (uid, *secrets))
        else:
            sql = (
                f"SELECT fingerprint, secret FROM keys WHERE secret IN ({','.join('?' * len(secrets))}) "
                "ORDER BY imported_at, fingerprint"
            )
            rows = self._fetchall(sql, secrets)
        return [self._load(row["fingerprint"], row["secret"]) for row in rows]

    def search_keys_by_uid_matcher(self, matcher: UidMatcher, key_type: KeyType | None = None) -> list[KeyRecord]:
        records = self.search_key("", key_type)
        return [r for r in records if any(matcher(uid) for uid in r.user_ids)]

    def get_key_block_by_id(self, key_id: bytes, secret: bool = False) -> KeyRecord | None:
        row = self._fetchone(
            "SELECT fingerprint, secret FROM keys WHERE key_id = ? AND secret = ? ORDER BY imported_at LIMIT 1",
            (key_id.hex(), int(secret)),
        )
        if row is None:
            return None
        return self._load(row["fingerprint"], row["secret"])

    def get_key_block(self, descriptor: KeyDescriptor) -> KeyRecord | None:
        row = self._fetchone(
            "SELECT fingerprint, secret FROM keys WHERE fingerprint = ? AND secret = ?",
            (fingerprint_key(descriptor.fingerprint), int(descriptor.secret)),
        )
        if row is None:
            return None
        return self._load(row["fingerprint"], row["secret"])

    def export_keyring(self) -> list[bytes]:
        """Сериализованные блоки всех ключей (резервная копия для restore_keyring)."""
        rows = self._fetchall("SELECT block FROM keys ORDER BY imported_at, fingerprint")
        return [bytes(row["block"]) for row in rows]

    def count_keys(self) -> dict[str, int]:
        rows = self._fetchall("SELECT secret, COUNT(*) AS cnt FROM keys GROUP BY secret")
        counts = {"public": 0, "private": 0}
        for row in rows:
            counts["private" if row["secret"] else "public"] = row["cnt"]
        return counts

    # --- write ---

    def import_key(self, record: KeyRecord, passphrase: bytes | None = None) -> KeyRecord | None:
        """
        Контракт:
            Выход: сохранённая запись или None, если ключ с тем же отпечатком
            и типом уже есть в связке.
        """
        _ = passphrase
        try:
            with transaction(self.conn):
                return self._insert(record)
        except sqlite3.Error as exc:
            raise KeyStoreError(f"Failed to import key {fingerprint_key(record.fingerprint)}: {exc}") from exc

    def restore_keyring(self, data: Any, uid: str) -> list[KeyRecord]:
        """
        Назначение:
            Восстанавливает ключи из резервной копии (список сериализованных
            блоков) и связывает каждый с uid.
        Ограничения:
            Все блоки разбираются до записи; запись идёт одной транзакцией,
            при любой ошибке связка остаётся без изменений.
        """
        records = [
            replace(self.codec.process_signatures(self.codec.parse(block)), user_ids=(uid,))
            for block in self._iter_blocks(data)
        ]
        restored: list[KeyRecord] = []
        try:
            with transaction(self.conn):
                for record in records:
                    imported = self._insert(record)
                    if imported is not None:
                        restored.append(imported)
        except sqlite3.Error as exc:
            raise KeyStoreError(f"Failed to restore keyring: {exc}") from exc
        return restored

    # --- helpers ---

    def _insert(self, record: KeyRecord) -> KeyRecord | None:
        """Вставка без собственной транзакции; None, если ключ уже есть."""
        fp = fingerprint_key(record.fingerprint)
        stored = replace(record, serialized=None)
        exists = self.conn.execute(
            "SELECT 1 FROM keys WHERE fingerprint = ? AND secret = ?",
            (fp, int(record.secret)),
        ).fetchone()
        if exists is not None:
            return None
        self.conn.execute(
            "INSERT INTO keys(fingerprint, secret, key_id, block, imported_at) VALUES (?, ?, ?, ?, ?)",
            (fp, int(record.secret), record.key_id.hex(), self.codec.serialize(stored), getNowIso()),
        )
        self.conn.executemany(
            "INSERT INTO user_ids(fingerprint, secret, position, uid) VALUES (?, ?, ?, ?)",
            [(fp, int(record.secret), pos, uid) for pos, uid in enumerate(record.user_ids)],
        )
        return stored

    @staticmethod
    def _iter_blocks(data: Any) -> Iterable[bytes]:
        if isinstance(data, (bytes, bytearray)):
            return [bytes(data)]
        if isinstance(data, (list, tuple)):
            return [bytes(item) for item in data]
        raise ValueError("Backup data must be bytes or a list of serialized key blocks")

    def _load(self, fp: str, secret: int) -> KeyRecord:
        uid_rows = self._fetchall(
            "SELECT uid FROM user_ids WHERE fingerprint = ? AND secret = ? ORDER BY position",
            (fp, secret),
        )
        return KeyRecord(
            fingerprint=bytes.fromhex(fp),
            secret=bool(secret),
            user_ids=tuple(row["uid"] for row in uid_rows),
            serialized=None,
            signatures_processed=True,
        )

    def _fetchall(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        try:
            return self.conn.execute(sql, params).fetchall()
        except sqlite3.Error as exc:
            raise KeyStoreError(f"Key store query failed: {exc}") from exc

    def _fetchone(self, sql: str, params: tuple = ()) -> sqlite3.Row | None:
        try:
            return self.conn.execute(sql, params).fetchone()
        except sqlite3.Error as exc:
            raise KeyStoreError(f"Key store query failed: {exc}") from exc


__all__ = ["SqliteKeyStore"]

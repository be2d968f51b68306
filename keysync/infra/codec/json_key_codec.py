from __future__ import annotations

import json
from dataclasses import replace
from typing import Any

from keysync.domain.exceptions import KeyBlockParseError
from keysync.domain.models import KeyRecord

FORMAT_VERSION = 1


class JsonKeyBlockCodec:
    """
    Назначение/ответственность:
        Транспортный JSON-формат блока ключа:
        {"version": 1, "fingerprint": "<hex>", "secret": false, "user_ids": [...]}.

    Ограничения:
        - Криптографии нет: формат переносит только отпечаток, тип и user id.
        - parse сохраняет исходные байты в KeyRecord.serialized.
    """

    def parse(self, serialized: bytes) -> KeyRecord:
        try:
            data = json.loads(serialized.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            raise KeyBlockParseError("Key block is not valid JSON") from exc
        if not isinstance(data, dict):
            raise KeyBlockParseError("Key block must be a JSON object")

        version = data.get("version", FORMAT_VERSION)
        if version != FORMAT_VERSION:
            raise KeyBlockParseError(f"Unsupported key block version: {version}", details={"version": version})

        fingerprint = self._parse_fingerprint(data.get("fingerprint"))
        user_ids = data.get("user_ids") or []
        if not isinstance(user_ids, list) or not all(isinstance(u, str) for u in user_ids):
            raise KeyBlockParseError("user_ids must be a list of strings")

        secret = data.get("secret", False)
        if not isinstance(secret, bool):
            raise KeyBlockParseError("secret must be a boolean", details={"secret": secret})

        return KeyRecord(
            fingerprint=fingerprint,
            secret=secret,
            user_ids=tuple(user_ids),
            serialized=bytes(serialized),
        )

    def process_signatures(self, record: KeyRecord) -> KeyRecord:
        """Пустые и повторные user id отбрасываются, порядок сохраняется."""
        if record.signatures_processed:
            return record
        unique: list[str] = []
        for uid in record.user_ids:
            if uid and uid not in unique:
                unique.append(uid)
        return replace(record, user_ids=tuple(unique), signatures_processed=True)

    def serialize(self, record: KeyRecord) -> bytes:
        payload: dict[str, Any] = {
            "version": FORMAT_VERSION,
            "fingerprint": record.fingerprint.hex(),
            "secret": record.secret,
            "user_ids": list(record.user_ids),
        }
        return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")

    @staticmethod
    def _parse_fingerprint(value: Any) -> bytes:
        if not isinstance(value, str) or not value:
            raise KeyBlockParseError("fingerprint is required")
        try:
            fingerprint = bytes.fromhex(value)
        except ValueError as exc:
            raise KeyBlockParseError("fingerprint must be hex", details={"fingerprint": value}) from exc
        if not fingerprint:
            raise KeyBlockParseError("fingerprint is required", details={"fingerprint": value})
        return fingerprint


__all__ = ["FORMAT_VERSION", "JsonKeyBlockCodec"]

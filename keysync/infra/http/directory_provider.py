from __future__ import annotations

import base64
from dataclasses import replace
from typing import Any, Sequence

from keysync.domain.exceptions import KeyBlockParseError, RemoteUnavailableError
from keysync.domain.identity import extract_valid_email
from keysync.domain.models import KeyRecord
from keysync.domain.ports.key_codec import KeyBlockCodecProtocol
from keysync.domain.ports.remote_provider import RemoteKeyProviderProtocol
from keysync.infra.http.directory_client import ApiError, DirectoryApiClient

KEYS_PATH = "/v1/keys"


class HttpDirectoryKeyProvider(RemoteKeyProviderProtocol):
    """
    Назначение/ответственность:
        Адаптер RemoteKeyProviderProtocol поверх DirectoryApiClient.

    Ограничения:
        - Ответ каталога: {"keys": [{"key": "<base64 block>"}]}.
        - Любой ApiError и нераспознанный блок -> RemoteUnavailableError.
        - Секретные ключи из каталога отбрасываются, наружу уходят только публичные.
        - Каталог отвечает за доверие к ключам; здесь подписи только обрабатываются.
    """

    def __init__(self, client: DirectoryApiClient, codec: KeyBlockCodecProtocol):
        self._client = client
        self._codec = codec

    async def get_trusted_public_keys_by_email(self, email: str) -> list[KeyRecord]:
        try:
            data = await self._client.getJson(KEYS_PATH, params={"email": email})
        except ApiError as exc:
            raise RemoteUnavailableError(
                f"Directory lookup by email failed: {exc.message}",
                operation="get_trusted_public_keys_by_email",
                details={"code": exc.code, "status_code": exc.status_code},
            ) from exc
        records = self._decode_keys(data, "get_trusted_public_keys_by_email")
        return [r for r in records if self._bound_to_email(r, email)]

    async def get_verification_keys_by_key_id(self, key_id: bytes) -> list[KeyRecord]:
        try:
            data = await self._client.getJson(f"{KEYS_PATH}/by-id/{key_id.hex()}", allowNotFound=True)
        except ApiError as exc:
            raise RemoteUnavailableError(
                f"Directory lookup by key id failed: {exc.message}",
                operation="get_verification_keys_by_key_id",
                details={"code": exc.code, "status_code": exc.status_code},
            ) from exc
        if data is None:
            return []
        records = self._decode_keys(data, "get_verification_keys_by_key_id")
        return [r for r in records if r.key_id == key_id]

    async def import_keys(self, records: Sequence[KeyRecord], uid: str) -> bool:
        public = [r for r in records if not r.secret]
        if not public:
            return False
        body = {
            "uid": uid,
            "keys": [base64.b64encode(self._codec.serialize(r)).decode("ascii") for r in public],
        }
        try:
            _status, data = await self._client.requestJson("POST", KEYS_PATH, jsonBody=body)
        except ApiError as exc:
            raise RemoteUnavailableError(
                f"Directory upload failed: {exc.message}",
                operation="import_keys",
                details={"code": exc.code, "status_code": exc.status_code},
            ) from exc
        accepted = data.get("accepted", 0) if isinstance(data, dict) else 0
        return isinstance(accepted, int) and accepted > 0

    def _decode_keys(self, data: Any, operation: str) -> list[KeyRecord]:
        """
        Алгоритм:
            - base64 -> codec.parse -> codec.process_signatures.
            - serialized остаётся в записи: ключ не сохранён локально.
        """
        items = data.get("keys") if isinstance(data, dict) else None
        if not isinstance(items, list):
            raise RemoteUnavailableError("Directory response has no keys array", operation=operation)

        records: list[KeyRecord] = []
        for item in items:
            encoded = item.get("key") if isinstance(item, dict) else None
            if not isinstance(encoded, str):
                raise RemoteUnavailableError("Directory key entry has no key block", operation=operation)
            try:
                block = base64.b64decode(encoded, validate=True)
                record = self._codec.process_signatures(self._codec.parse(block))
            except (ValueError, KeyBlockParseError) as exc:
                raise RemoteUnavailableError(f"Directory returned a malformed key block: {exc}", operation=operation) from exc
            if record.secret:
                continue
            records.append(record if record.serialized else replace(record, serialized=block))
        return records

    @staticmethod
    def _bound_to_email(record: KeyRecord, email: str) -> bool:
        wanted = email.casefold()
        for uid in record.user_ids:
            found = extract_valid_email(uid)
            if found is not None and found.casefold() == wanted:
                return True
        return False


__all__ = ["KEYS_PATH", "HttpDirectoryKeyProvider"]

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any

from keysync.domain.exceptions import RemoteUnavailableError
from keysync.domain.identity import (
    canonicalize_identity,
    canonicalize_user_ids,
    contains_case_insensitive,
    extract_valid_email,
)
from keysync.domain.keys.adapter import from_key_object, to_key_objects
from keysync.domain.models import KeyDescriptor, KeyRecord, KeyType, SyncReport
from keysync.domain.ports.key_codec import KeyBlockCodecProtocol
from keysync.domain.ports.local_store import LocalKeyStoreProtocol
from keysync.domain.ports.remote_provider import RealmLookupProtocol, RemoteKeyProviderProtocol
from keysync.domain.reconcile.dedup import merge_local_and_remote
from keysync.domain.reconcile.differ import KeySetDiffer, unmanaged_report
from keysync.loggingSetup import logEvent


class ReconcilingKeyRing:
    """
    Назначение/ответственность:
        Фасад над локальной связкой ключей и необязательным удалённым каталогом.
        Сводит результаты двух источников: поиск, разрешение блоков, сверка.

    Взаимодействия:
        - local_store: синхронный LocalKeyStoreProtocol, только чтение
          (кроме явных import_key/restore_keyring).
        - remote: асинхронный RemoteKeyProviderProtocol или None.
        - realm_lookup: решает, обслуживается ли email каталогом (для сверки).
        - codec: разбор сериализованных блоков из каталога.

    Ограничения:
        - Локальная фаза всегда завершается до обращения к каталогу.
        - Найденные в каталоге ключи никогда не импортируются неявно.
        - RemoteUnavailableError деградирует до локальных результатов, кроме
          вызовов с require_remote_response=True.
        - Ошибки локального хранилища пробрасываются без изменений.
    """

    def __init__(
        self,
        local_store: LocalKeyStoreProtocol,
        codec: KeyBlockCodecProtocol,
        remote: RemoteKeyProviderProtocol | None = None,
        realm_lookup: RealmLookupProtocol | None = None,
        logger: logging.Logger | None = None,
        run_id: str = "-",
    ):
        self.local_store = local_store
        self.codec = codec
        self.remote = remote
        self.realm_lookup = realm_lookup
        self.differ = KeySetDiffer()
        self.logger = logger or logging.getLogger("keysync.keyring")
        self.run_id = run_id

    # --- identity-normalizing store hooks ---

    def import_key(self, record: KeyRecord, passphrase: bytes | None = None) -> KeyRecord | None:
        """
        Назначение:
            Импорт блока в локальную связку с выравниванием user id.
        Алгоритм:
            - Обработка подписей (заполняет user_ids).
            - uid с валидным email -> "<email>", как при генерации ключей.
            - Делегирование local_store.import_key.
        """
        processed = self.codec.process_signatures(record)
        aligned = replace(processed, user_ids=canonicalize_user_ids(processed.user_ids))
        return self.local_store.import_key(aligned, passphrase)

    def restore_keyring(self, data: Any, uid: str) -> list[KeyRecord]:
        """Восстановление резервной копии; uid-email приводится к "<email>"."""
        return self.local_store.restore_keyring(data, canonicalize_identity(uid))

    # --- search ---

    def _search_local(self, uid: str, email: str | None, key_type: KeyType | None) -> list[KeyRecord]:
        if email is None:
            found = self.local_store.search_key(uid, key_type)
        else:
            found = self.local_store.search_keys_by_uid_matcher(
                lambda candidate: contains_case_insensitive(candidate, email),
                key_type,
            )
        return list(found or [])

    async def search_key_records(
        self,
        uid: str,
        key_type: KeyType | None = None,
        require_remote_response: bool = False,
    ) -> list[KeyRecord]:
        """
        Назначение:
            Поиск ключей по uid локально и (для публичных) в каталоге.

        Контракт (вход/выход):
            - Вход: uid (пустая строка ищет всё локально), key_type, require_remote_response.
            - Выход: список KeyRecord без повторов по отпечатку, локальные первыми.

        Ошибки:
            - RemoteUnavailableError, только если require_remote_response=True.
            - Ошибки локального хранилища пробрасываются.
        """
        email = extract_valid_email(uid)
        local_keys = self._search_local(uid, email, key_type)

        if key_type == KeyType.PRIVATE or self.remote is None or not email:
            return local_keys

        try:
            remote_keys = await self.remote.get_trusted_public_keys_by_email(email)
        except RemoteUnavailableError as exc:
            if require_remote_response:
                logEvent(self.logger, logging.ERROR, self.run_id, "search", f"Remote search failed email={email}: {exc}")
                raise
            logEvent(
                self.logger,
                logging.WARNING,
                self.run_id,
                "search",
                f"Remote search failed email={email}, using local keys only: {exc}",
            )
            return local_keys

        if not remote_keys:
            return local_keys

        merged = merge_local_and_remote(local_keys, list(remote_keys))
        logEvent(
            self.logger,
            logging.DEBUG,
            self.run_id,
            "search",
            f"search merged email={email} local={len(local_keys)} remote={len(remote_keys)} result={len(merged)}",
        )
        return merged

    async def search_key_local_and_remote(
        self,
        uid: str,
        key_type: KeyType | None = None,
        require_remote_response: bool = False,
    ) -> list[KeyDescriptor]:
        """То же, что search_key_records, но в виде KeyDescriptor."""
        records = await self.search_key_records(uid, key_type, require_remote_response)
        return to_key_objects(records)

    # --- key block resolution ---

    def resolve_key_block(self, descriptor: KeyDescriptor) -> KeyRecord | None:
        """
        Назначение:
            Блок ключа по дескриптору: локальный, иначе из сериализованных байтов.
        Инварианты:
            - Для секретного ключа байты из каталога не используются никогда.
        """
        local_block = self.local_store.get_key_block(descriptor)
        if descriptor.secret or local_block is not None or not descriptor.serialized:
            return local_block
        return from_key_object(descriptor, self.codec)

    async def resolve_key_block_by_id(
        self,
        key_id: bytes,
        secret: bool = False,
        require_remote_response: bool = False,
    ) -> KeyRecord | None:
        """
        Назначение:
            Блок ключа по key id: локально, иначе первый ключ проверки из каталога.
        Ограничения:
            Секретные ключи ищутся только локально.
        """
        local_block = self.local_store.get_key_block_by_id(key_id, secret)
        if secret or local_block is not None or self.remote is None:
            return local_block

        try:
            keys = await self.remote.get_verification_keys_by_key_id(key_id)
        except RemoteUnavailableError as exc:
            if require_remote_response:
                raise
            logEvent(
                self.logger,
                logging.WARNING,
                self.run_id,
                "resolve",
                f"Remote key id lookup failed key_id={key_id.hex()}: {exc}",
            )
            return None
        return keys[0] if keys else None

    # --- sync ---

    def _is_sync_managed(self, email: str | None) -> bool:
        if email is None or self.remote is None:
            return False
        if self.realm_lookup is None:
            return True
        return self.realm_lookup.get_realm_by_email(email) is not None

    async def compare_with_remote(self, uid: str, require_remote_response: bool = False) -> SyncReport:
        """
        Назначение:
            Сверка локальных публичных ключей uid с каталогом.

        Выходные данные:
            SyncReport
                sync_managed=False и все локальные ключи в common, если uid
                не сводится к email обслуживаемого realm.

        Ошибки:
            RemoteUnavailableError при require_remote_response=True; иначе
            деградация до неуправляемого отчёта.
        """
        local_keys = list(self.local_store.search_key(uid, KeyType.PUBLIC) or [])

        email = extract_valid_email(uid)
        if not self._is_sync_managed(email):
            return unmanaged_report(local_keys)

        try:
            remote_keys = await self.remote.get_trusted_public_keys_by_email(email)
        except RemoteUnavailableError as exc:
            if require_remote_response:
                raise
            logEvent(
                self.logger,
                logging.WARNING,
                self.run_id,
                "sync",
                f"Remote compare failed email={email}, reporting as unmanaged: {exc}",
            )
            return unmanaged_report(local_keys)

        report = self.differ.build_report(local_keys, list(remote_keys))
        logEvent(
            self.logger,
            logging.INFO,
            self.run_id,
            "sync",
            f"compare email={email} local_only={len(report.local_only)} "
            f"common={len(report.common)} remote_only={len(report.remote_only)}",
        )
        return report

    async def upload_keys(self, uid: str, require_remote_response: bool = False) -> bool:
        """
        Назначение:
            Выгрузка локальных ключей uid в каталог.
        Выходные данные:
            bool: True, если каталог принял хотя бы один ключ.
        """
        if self.remote is None:
            logEvent(self.logger, logging.WARNING, self.run_id, "upload", "No remote provider configured")
            return False

        records = list(self.local_store.search_key(uid, KeyType.PUBLIC) or [])
        try:
            return await self.remote.import_keys(records, uid)
        except RemoteUnavailableError as exc:
            if require_remote_response:
                raise
            logEvent(self.logger, logging.WARNING, self.run_id, "upload", f"Upload failed uid={uid}: {exc}")
            return False


__all__ = ["ReconcilingKeyRing"]

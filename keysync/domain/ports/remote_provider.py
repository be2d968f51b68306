from __future__ import annotations

from typing import Protocol, Sequence, runtime_checkable

from keysync.domain.models import KeyRecord


@runtime_checkable
class RemoteKeyProviderProtocol(Protocol):
    """
    Назначение/ответственность:
        Асинхронный удалённый каталог ключей.
    Контракт:
        - Все методы бросают RemoteUnavailableError при сбое сети/каталога.
        - Возвращаемые записи несут serialized (исходные байты блока).
        - Проверка доверия к ключам выполняется самим провайдером.
    """

    async def get_trusted_public_keys_by_email(self, email: str) -> list[KeyRecord]: ...

    async def get_verification_keys_by_key_id(self, key_id: bytes) -> list[KeyRecord]: ...

    async def import_keys(self, records: Sequence[KeyRecord], uid: str) -> bool:
        """True, если каталог принял хотя бы один ключ."""
        ...


@runtime_checkable
class RealmLookupProtocol(Protocol):
    """
    Назначение:
        Определяет realm каталога по email; None, если домен каталогом не обслуживается.
    """

    def get_realm_by_email(self, email: str) -> str | None: ...


__all__ = ["RemoteKeyProviderProtocol", "RealmLookupProtocol"]

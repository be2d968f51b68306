from __future__ import annotations

from typing import Any, Callable, Protocol, runtime_checkable

from keysync.domain.models import KeyDescriptor, KeyRecord, KeyType

UidMatcher = Callable[[str], bool]


@runtime_checkable
class LocalKeyStoreProtocol(Protocol):
    """
    Назначение/ответственность:
        Синхронный доступ к локально сохранённым ключам.
    Ограничения:
        - "Ничего не найдено" -> пустой список (None допускается и трактуется как пустой).
        - Ошибки хранилища (например, заблокировано) выражаются исключениями,
          а не пустым результатом.
    """

    def search_key(self, uid: str, key_type: KeyType | None = None) -> list[KeyRecord] | None:
        """Точное совпадение uid."""
        ...

    def search_keys_by_uid_matcher(self, matcher: UidMatcher, key_type: KeyType | None = None) -> list[KeyRecord] | None:
        """Ключи, у которых хотя бы один uid удовлетворяет matcher."""
        ...

    def get_key_block_by_id(self, key_id: bytes, secret: bool = False) -> KeyRecord | None: ...

    def get_key_block(self, descriptor: KeyDescriptor) -> KeyRecord | None: ...

    def import_key(self, record: KeyRecord, passphrase: bytes | None = None) -> KeyRecord | None:
        """Возвращает импортированный ключ или None, если ключ уже был в связке."""
        ...

    def restore_keyring(self, data: Any, uid: str) -> list[KeyRecord]: ...


__all__ = ["LocalKeyStoreProtocol", "UidMatcher"]

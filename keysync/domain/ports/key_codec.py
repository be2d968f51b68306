from __future__ import annotations

from typing import Protocol, runtime_checkable

from keysync.domain.models import KeyRecord


@runtime_checkable
class KeyBlockCodecProtocol(Protocol):
    """
    Назначение:
        Разбор и сериализация блоков ключей (формат определяется реализацией).
    Ошибки:
        parse бросает KeyBlockParseError на повреждённых данных.
    """

    def parse(self, serialized: bytes) -> KeyRecord: ...

    def process_signatures(self, record: KeyRecord) -> KeyRecord:
        """Обрабатывает подписи блока и заполняет user_ids."""
        ...

    def serialize(self, record: KeyRecord) -> bytes: ...


__all__ = ["KeyBlockCodecProtocol"]

from __future__ import annotations

from typing import Iterable

from keysync.domain.models import KeyDescriptor, KeyRecord
from keysync.domain.ports.key_codec import KeyBlockCodecProtocol


def fingerprint_key(fingerprint: bytes) -> str:
    """
    Назначение:
        Ключ для множеств/словарей по отпечатку. Сравнение точное, без префиксов.
    """
    return fingerprint.hex()


def to_key_object(record: KeyRecord) -> KeyDescriptor:
    """
    Назначение:
        Проекция KeyRecord -> KeyDescriptor для результатов поиска и отчётов.
    """
    return KeyDescriptor(
        fingerprint=record.fingerprint,
        key_id=record.key_id,
        user_ids=tuple(record.user_ids),
        secret=record.secret,
        serialized=record.serialized or None,
    )


def to_key_objects(records: Iterable[KeyRecord]) -> list[KeyDescriptor]:
    return [to_key_object(record) for record in records]


def from_key_object(descriptor: KeyDescriptor, codec: KeyBlockCodecProtocol) -> KeyRecord | None:
    """
    Назначение:
        Восстанавливает KeyRecord из сериализованных байтов дескриптора.

    Выходные данные:
        KeyRecord | None
            None, если у дескриптора нет байтов.

    Алгоритм:
        - codec.parse -> codec.process_signatures.
        - Байты сохраняются в записи: она не сохранена локально.
    """
    if not descriptor.serialized:
        return None
    record = codec.parse(descriptor.serialized)
    return codec.process_signatures(record)


__all__ = ["fingerprint_key", "to_key_object", "to_key_objects", "from_key_object"]

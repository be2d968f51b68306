from __future__ import annotations

import base64
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

KEY_ID_LENGTH = 8


class KeyType(str, Enum):
    """
    Назначение:
        Фильтр типа ключей при поиске в связке.
    """

    PUBLIC = "public"
    PRIVATE = "private"
    ALL = "all"


@dataclass(frozen=True)
class KeyRecord:
    """
    Назначение:
        Разобранный блок ключа (публичного или секретного).

    Поля:
        fingerprint: отпечаток ключа, уникальный идентификатор.
        secret: True для секретного ключа.
        user_ids: связанные с ключом user id.
        serialized: исходные байты блока, если запись пришла из удалённого
            каталога и не сохранена локально.
        signatures_processed: подписи блока уже обработаны (user_ids заполнены).

    Инварианты:
        - Один и тот же ключ <=> побайтно равные fingerprint.
          user_ids и secret в сравнении не участвуют.
    """

    fingerprint: bytes
    secret: bool = False
    user_ids: tuple[str, ...] = ()
    serialized: bytes | None = field(default=None, repr=False)
    signatures_processed: bool = False

    def __post_init__(self) -> None:
        if not self.fingerprint:
            raise ValueError("fingerprint must not be empty")

    @property
    def key_id(self) -> bytes:
        return self.fingerprint[-KEY_ID_LENGTH:]


@dataclass(frozen=True)
class KeyDescriptor:
    """
    Назначение:
        Лёгкая сериализуемая проекция KeyRecord для поиска, сравнения и отчётов.
    """

    fingerprint: bytes
    key_id: bytes
    user_ids: tuple[str, ...]
    secret: bool
    serialized: bytes | None = field(default=None, repr=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "fingerprint": self.fingerprint.hex(),
            "key_id": self.key_id.hex(),
            "user_ids": list(self.user_ids),
            "secret": self.secret,
            "serialized": base64.b64encode(self.serialized).decode("ascii") if self.serialized else None,
        }


@dataclass
class SyncReport:
    """
    Назначение:
        Трёхстороннее сравнение локальных и удалённых ключей для identity.

    Поля:
        sync_managed: False, если identity нельзя проверить в удалённом каталоге.
        local_only: ключи, которых нет в каталоге.
        common: ключи, присутствующие и локально, и в каталоге.
        remote_only: ключи каталога, которых нет локально.
    """

    sync_managed: bool
    local_only: list[KeyDescriptor] = field(default_factory=list)
    common: list[KeyDescriptor] = field(default_factory=list)
    remote_only: list[KeyDescriptor] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "syncManaged": self.sync_managed,
            "localOnly": [k.to_dict() for k in self.local_only],
            "common": [k.to_dict() for k in self.common],
            "remoteOnly": [k.to_dict() for k in self.remote_only],
        }


__all__ = ["KEY_ID_LENGTH", "KeyType", "KeyRecord", "KeyDescriptor", "SyncReport"]

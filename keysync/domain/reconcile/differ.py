from __future__ import annotations

from dataclasses import dataclass, field

from keysync.domain.keys.adapter import fingerprint_key, to_key_objects
from keysync.domain.models import KeyRecord, SyncReport


@dataclass
class KeySetDiff:
    """
    Назначение:
        Результат сравнения локального и удалённого наборов ключей по отпечаткам.
    """

    local_only: list[KeyRecord] = field(default_factory=list)
    common: list[KeyRecord] = field(default_factory=list)
    remote_only: list[KeyRecord] = field(default_factory=list)


class KeySetDiffer:
    """
    Назначение/ответственность:
        Вычисляет трёхстороннюю классификацию local-only / common / remote-only.

    Инварианты:
        - local_only ∪ common == множество локальных отпечатков.
        - common ∪ remote_only == множество удалённых отпечатков.
        - local_only ∩ remote_only == ∅.
        - Порядок внутри каждой группы совпадает с порядком входа.
    """

    def diff(self, local: list[KeyRecord], remote: list[KeyRecord]) -> KeySetDiff:
        """
        Алгоритм:
            - local_only: локальные, чей отпечаток не найден среди удалённых.
            - common: локальные, чей отпечаток не найден среди local_only.
            - remote_only: удалённые, чей отпечаток не найден среди локальных.
        """
        remote_fps = {fingerprint_key(r.fingerprint) for r in remote}
        local_fps = {fingerprint_key(r.fingerprint) for r in local}

        local_only = [r for r in local if fingerprint_key(r.fingerprint) not in remote_fps]
        local_only_fps = {fingerprint_key(r.fingerprint) for r in local_only}
        common = [r for r in local if fingerprint_key(r.fingerprint) not in local_only_fps]
        remote_only = [r for r in remote if fingerprint_key(r.fingerprint) not in local_fps]

        return KeySetDiff(local_only=local_only, common=common, remote_only=remote_only)

    def build_report(self, local: list[KeyRecord], remote: list[KeyRecord]) -> SyncReport:
        result = self.diff(local, remote)
        return SyncReport(
            sync_managed=True,
            local_only=to_key_objects(result.local_only),
            common=to_key_objects(result.common),
            remote_only=to_key_objects(result.remote_only),
        )


def unmanaged_report(local: list[KeyRecord]) -> SyncReport:
    """Отчёт для identity, которую нельзя проверить в каталоге: все локальные ключи считаются общими."""
    return SyncReport(sync_managed=False, local_only=[], common=to_key_objects(local), remote_only=[])


__all__ = ["KeySetDiff", "KeySetDiffer", "unmanaged_report"]

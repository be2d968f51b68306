from __future__ import annotations

from typing import Iterable

from keysync.domain.keys.adapter import fingerprint_key
from keysync.domain.models import KeyRecord


def dedupe_by_fingerprint(records: Iterable[KeyRecord]) -> list[KeyRecord]:
    """
    Назначение:
        Удаляет повторы по отпечатку с сохранением порядка.

    Инварианты:
        - Каждый отпечаток встречается не более одного раза.
        - Остаётся первое вхождение: при конкатенации local + remote
          локальная запись вытесняет удалённый дубликат.
    """
    seen: set[str] = set()
    result: list[KeyRecord] = []
    for record in records:
        key = fingerprint_key(record.fingerprint)
        if key in seen:
            continue
        seen.add(key)
        result.append(record)
    return result


def merge_local_and_remote(local: list[KeyRecord], remote: list[KeyRecord]) -> list[KeyRecord]:
    """Локальные записи идут первыми, затем удалённые; повторы по отпечатку отбрасываются."""
    if not remote:
        return list(local)
    return dedupe_by_fingerprint([*local, *remote])


__all__ = ["dedupe_by_fingerprint", "merge_local_and_remote"]

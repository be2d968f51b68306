from __future__ import annotations

from typing import Mapping

from keysync.domain.ports.remote_provider import RealmLookupProtocol


class StaticRealmLookup(RealmLookupProtocol):
    """
    Назначение:
        Realm по домену email из настроек (domain -> realm).
    Алгоритм:
        Точное совпадение домена, затем родительские домены
        (a.b.example.com -> b.example.com -> example.com).
    """

    def __init__(self, realms: Mapping[str, str]):
        self._realms = {domain.strip().lower(): realm for domain, realm in realms.items() if domain.strip()}

    def get_realm_by_email(self, email: str) -> str | None:
        _local, sep, domain = email.rpartition("@")
        if not sep or not domain:
            return None
        labels = domain.lower().split(".")
        for start in range(len(labels) - 1):
            realm = self._realms.get(".".join(labels[start:]))
            if realm is not None:
                return realm
        return None


__all__ = ["StaticRealmLookup"]

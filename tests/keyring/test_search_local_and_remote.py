from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

import pytest

from keysync.domain.exceptions import KeyStoreError, RemoteUnavailableError
from keysync.domain.models import KeyRecord, KeyType
from keysync.infra.codec.json_key_codec import JsonKeyBlockCodec
from keysync.usecases.keyring_service import ReconcilingKeyRing

A = b"\xaa" * 20
B = b"\xbb" * 20
C = b"\xcc" * 20


@dataclass
class FakeLocalStore:
    """
    Назначение:
        Упрощённая локальная связка для тестов поиска (только чтение).
    """

    records: list[KeyRecord] | None = None
    fail_with: Exception | None = None
    calls: list[tuple] = field(default_factory=list)

    def _typed(self, key_type):
        if self.fail_with is not None:
            raise self.fail_with
        if self.records is None:
            return None
        if key_type == KeyType.ALL:
            return list(self.records)
        want_secret = key_type == KeyType.PRIVATE
        return [r for r in self.records if r.secret == want_secret]

    def search_key(self, uid, key_type=None):
        self.calls.append(("search_key", uid, key_type))
        typed = self._typed(key_type)
        if typed is None:
            return None
        return [r for r in typed if not uid or uid in r.user_ids]

    def search_keys_by_uid_matcher(self, matcher, key_type=None):
        self.calls.append(("search_keys_by_uid_matcher", key_type))
        typed = self._typed(key_type)
        if typed is None:
            return None
        return [r for r in typed if any(matcher(u) for u in r.user_ids)]

    def import_key(self, record, passphrase=None):
        self.calls.append(("import_key", record))
        return record


@dataclass
class ScriptedRemote:
    keys: list[KeyRecord] = field(default_factory=list)
    error: Exception | None = None
    emails: list[str] = field(default_factory=list)

    async def get_trusted_public_keys_by_email(self, email):
        self.emails.append(email)
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return list(self.keys)


def local_key(fp: bytes, uid: str = "<alice@example.com>", secret: bool = False) -> KeyRecord:
    return KeyRecord(fingerprint=fp, secret=secret, user_ids=(uid,), signatures_processed=True)


def remote_key(fp: bytes) -> KeyRecord:
    return KeyRecord(fingerprint=fp, user_ids=("Alice <alice@example.com>",), serialized=b"block-" + fp)


def make_keyring(store, remote=None) -> ReconcilingKeyRing:
    return ReconcilingKeyRing(store, JsonKeyBlockCodec(), remote=remote)


def fps(descriptors) -> list[bytes]:
    return [d.fingerprint for d in descriptors]


def test_search_merges_remote_without_duplicates():
    store = FakeLocalStore(records=[local_key(A)])
    remote = ScriptedRemote(keys=[remote_key(A), remote_key(B)])

    result = asyncio.run(make_keyring(store, remote).search_key_local_and_remote("alice@example.com"))

    assert fps(result) == [A, B]
    assert result[0].serialized is None
    assert result[1].serialized == b"block-" + B
    assert remote.emails == ["alice@example.com"]


def test_search_uses_case_insensitive_email_match_locally():
    store = FakeLocalStore(records=[local_key(A, uid="Alice <ALICE@Example.com>"), local_key(C, uid="bob@example.com")])

    result = asyncio.run(make_keyring(store).search_key_local_and_remote("Alice <alice@example.com>"))

    assert fps(result) == [A]
    assert store.calls[0][0] == "search_keys_by_uid_matcher"


def test_search_with_empty_remote_returns_local_only():
    store = FakeLocalStore(records=[local_key(A)])
    remote = ScriptedRemote(keys=[])

    result = asyncio.run(make_keyring(store, remote).search_key_local_and_remote("alice@example.com"))

    assert fps(result) == [A]


def test_search_deduplicates_remote_duplicates_too():
    store = FakeLocalStore(records=[])
    remote = ScriptedRemote(keys=[remote_key(B), remote_key(B), remote_key(C)])

    result = asyncio.run(make_keyring(store, remote).search_key_local_and_remote("alice@example.com"))

    assert fps(result) == [B, C]


def test_search_degrades_to_local_when_remote_fails():
    store = FakeLocalStore(records=[local_key(A)])
    remote = ScriptedRemote(error=RemoteUnavailableError("down"))

    result = asyncio.run(make_keyring(store, remote).search_key_local_and_remote("alice@example.com"))

    assert fps(result) == [A]


def test_search_strict_mode_propagates_remote_failure():
    store = FakeLocalStore(records=[local_key(A)])
    remote = ScriptedRemote(error=RemoteUnavailableError("down"))
    keyring = make_keyring(store, remote)

    with pytest.raises(RemoteUnavailableError):
        asyncio.run(keyring.search_key_local_and_remote("alice@example.com", require_remote_response=True))


@pytest.mark.parametrize("uid", ["not-an-email", "Alice", ""])
def test_search_skips_remote_without_email(uid):
    store = FakeLocalStore(records=[local_key(A, uid="not-an-email")])
    remote = ScriptedRemote(keys=[remote_key(B)])

    result = asyncio.run(make_keyring(store, remote).search_key_local_and_remote(uid))

    assert remote.emails == []
    assert store.calls[0] == ("search_key", uid, None)
    if uid in ("not-an-email", ""):
        assert fps(result) == [A]
    else:
        assert result == []


def test_search_private_keys_never_consults_remote():
    store = FakeLocalStore(records=[local_key(A, secret=True), local_key(B)])
    remote = ScriptedRemote(keys=[remote_key(C)])

    result = asyncio.run(make_keyring(store, remote).search_key_local_and_remote("alice@example.com", KeyType.PRIVATE))

    assert fps(result) == [A]
    assert remote.emails == []


def test_search_without_remote_provider_returns_local():
    store = FakeLocalStore(records=[local_key(A)])

    result = asyncio.run(make_keyring(store).search_key_local_and_remote("alice@example.com"))

    assert fps(result) == [A]


def test_search_treats_none_from_store_as_empty():
    store = FakeLocalStore(records=None)

    result = asyncio.run(make_keyring(store).search_key_local_and_remote("alice@example.com"))

    assert result == []


def test_search_store_error_is_not_conflated_with_no_keys():
    store = FakeLocalStore(records=[local_key(A)], fail_with=KeyStoreError("keyring is locked"))
    remote = ScriptedRemote(keys=[remote_key(B)])

    with pytest.raises(KeyStoreError):
        asyncio.run(make_keyring(store, remote).search_key_local_and_remote("alice@example.com"))
    assert remote.emails == []


def test_search_never_imports_remote_keys():
    store = FakeLocalStore(records=[local_key(A)])
    remote = ScriptedRemote(keys=[remote_key(B)])

    asyncio.run(make_keyring(store, remote).search_key_local_and_remote("alice@example.com"))

    assert not [c for c in store.calls if c[0] == "import_key"]


def test_search_key_records_returns_full_records():
    store = FakeLocalStore(records=[local_key(A)])
    remote = ScriptedRemote(keys=[remote_key(B)])

    records = asyncio.run(make_keyring(store, remote).search_key_records("alice@example.com"))

    assert [r.fingerprint for r in records] == [A, B]
    assert records[1].serialized == b"block-" + B

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

import pytest

from keysync.domain.exceptions import RemoteUnavailableError
from keysync.domain.keys.adapter import to_key_object
from keysync.domain.models import KeyRecord, KeyType
from keysync.infra.codec.json_key_codec import JsonKeyBlockCodec
from keysync.infra.realms import StaticRealmLookup
from keysync.usecases.keyring_service import ReconcilingKeyRing

A = b"\x01" * 20
B = b"\x02" * 20
C = b"\x03" * 20
D = b"\x04" * 20
ALICE = "Alice <alice@example.com>"

codec = JsonKeyBlockCodec()


@dataclass
class FakeLocalStore:
    records: list[KeyRecord] = field(default_factory=list)

    def search_key(self, uid, key_type=None):
        want_secret = key_type == KeyType.PRIVATE
        return [r for r in self.records if r.secret == want_secret and (not uid or uid in r.user_ids)]

    def get_key_block(self, descriptor):
        for r in self.records:
            if r.fingerprint == descriptor.fingerprint and r.secret == descriptor.secret:
                return r
        return None

    def get_key_block_by_id(self, key_id, secret=False):
        for r in self.records:
            if r.key_id == key_id and r.secret == secret:
                return r
        return None


@dataclass
class ScriptedRemote:
    by_email: list[KeyRecord] = field(default_factory=list)
    by_id: list[KeyRecord] = field(default_factory=list)
    error: Exception | None = None
    calls: list[str] = field(default_factory=list)

    async def get_trusted_public_keys_by_email(self, email):
        self.calls.append(f"email:{email}")
        if self.error is not None:
            raise self.error
        return list(self.by_email)

    async def get_verification_keys_by_key_id(self, key_id):
        self.calls.append(f"id:{key_id.hex()}")
        if self.error is not None:
            raise self.error
        return list(self.by_id)


def local_key(fp: bytes, uid: str = ALICE, secret: bool = False) -> KeyRecord:
    return KeyRecord(fingerprint=fp, secret=secret, user_ids=(uid,), signatures_processed=True)


def remote_key(fp: bytes, uid: str = ALICE, secret: bool = False) -> KeyRecord:
    record = KeyRecord(fingerprint=fp, secret=secret, user_ids=(uid,))
    return codec.parse(codec.serialize(record))


def make_keyring(store, remote=None, realms=None) -> ReconcilingKeyRing:
    realm_lookup = StaticRealmLookup(realms) if realms is not None else None
    return ReconcilingKeyRing(store, codec, remote=remote, realm_lookup=realm_lookup)


def fps(descriptors) -> list[bytes]:
    return [d.fingerprint for d in descriptors]


# --- resolve_key_block ---


def test_resolve_key_block_prefers_local_block():
    stored = local_key(A)
    keyring = make_keyring(FakeLocalStore(records=[stored]))

    assert keyring.resolve_key_block(to_key_object(remote_key(A))) is stored


def test_resolve_key_block_parses_serialized_public_key():
    keyring = make_keyring(FakeLocalStore())

    record = keyring.resolve_key_block(to_key_object(remote_key(B)))

    assert record is not None
    assert record.fingerprint == B
    assert record.signatures_processed is True
    assert record.serialized


def test_resolve_key_block_never_builds_secret_key_from_bytes():
    keyring = make_keyring(FakeLocalStore())
    secret_descriptor = to_key_object(remote_key(C, secret=True))
    assert secret_descriptor.serialized

    assert keyring.resolve_key_block(secret_descriptor) is None


def test_resolve_key_block_without_bytes_returns_none():
    keyring = make_keyring(FakeLocalStore())
    assert keyring.resolve_key_block(to_key_object(local_key(D))) is None


# --- resolve_key_block_by_id ---


def test_resolve_by_id_returns_local_without_remote_call():
    stored = local_key(A)
    remote = ScriptedRemote(by_id=[remote_key(A)])

    result = asyncio.run(make_keyring(FakeLocalStore(records=[stored]), remote).resolve_key_block_by_id(A[-8:]))

    assert result is stored
    assert remote.calls == []


def test_resolve_by_id_secret_is_local_only():
    remote = ScriptedRemote(by_id=[remote_key(A)])

    result = asyncio.run(make_keyring(FakeLocalStore(), remote).resolve_key_block_by_id(A[-8:], secret=True))

    assert result is None
    assert remote.calls == []


def test_resolve_by_id_falls_back_to_first_remote_key():
    remote = ScriptedRemote(by_id=[remote_key(B), remote_key(C)])

    result = asyncio.run(make_keyring(FakeLocalStore(), remote).resolve_key_block_by_id(B[-8:]))

    assert result is not None and result.fingerprint == B
    assert remote.calls == [f"id:{B[-8:].hex()}"]


def test_resolve_by_id_returns_none_when_remote_has_nothing():
    remote = ScriptedRemote(by_id=[])
    assert asyncio.run(make_keyring(FakeLocalStore(), remote).resolve_key_block_by_id(B[-8:])) is None


def test_resolve_by_id_without_remote_provider_returns_none():
    assert asyncio.run(make_keyring(FakeLocalStore()).resolve_key_block_by_id(B[-8:])) is None


def test_resolve_by_id_failure_degrades_or_propagates():
    remote = ScriptedRemote(error=RemoteUnavailableError("down"))
    keyring = make_keyring(FakeLocalStore(), remote)

    assert asyncio.run(keyring.resolve_key_block_by_id(B[-8:])) is None
    with pytest.raises(RemoteUnavailableError):
        asyncio.run(keyring.resolve_key_block_by_id(B[-8:], require_remote_response=True))


# --- compare_with_remote ---


def test_compare_reports_common_and_remote_only():
    store = FakeLocalStore(records=[local_key(A)])
    remote = ScriptedRemote(by_email=[remote_key(A), remote_key(B)])

    report = asyncio.run(make_keyring(store, remote, realms={"example.com": "example"}).compare_with_remote(ALICE))

    assert report.sync_managed is True
    assert report.local_only == []
    assert fps(report.common) == [A]
    assert fps(report.remote_only) == [B]
    assert remote.calls == ["email:alice@example.com"]


def test_compare_partition_holds_for_overlapping_sets():
    store = FakeLocalStore(records=[local_key(A), local_key(B), local_key(C)])
    remote = ScriptedRemote(by_email=[remote_key(B), remote_key(D)])

    report = asyncio.run(make_keyring(store, remote).compare_with_remote(ALICE))

    assert fps(report.local_only) == [A, C]
    assert fps(report.common) == [B]
    assert fps(report.remote_only) == [D]
    assert set(fps(report.local_only)) | set(fps(report.common)) == {A, B, C}
    assert set(fps(report.common)) | set(fps(report.remote_only)) == {B, D}


def test_compare_non_email_identity_is_not_sync_managed():
    store = FakeLocalStore(records=[local_key(A, uid="not-an-email"), local_key(B, uid="not-an-email")])
    remote = ScriptedRemote(by_email=[remote_key(C)])

    report = asyncio.run(make_keyring(store, remote).compare_with_remote("not-an-email"))

    assert report.to_dict()["syncManaged"] is False
    assert fps(report.common) == [A, B]
    assert report.local_only == [] and report.remote_only == []
    assert remote.calls == []


def test_compare_email_outside_known_realms_is_not_sync_managed():
    store = FakeLocalStore(records=[local_key(A)])
    remote = ScriptedRemote(by_email=[remote_key(B)])

    report = asyncio.run(make_keyring(store, remote, realms={"corp.example.net": "corp"}).compare_with_remote(ALICE))

    assert report.sync_managed is False
    assert fps(report.common) == [A]
    assert remote.calls == []


def test_compare_failure_degrades_or_propagates():
    store = FakeLocalStore(records=[local_key(A)])
    remote = ScriptedRemote(error=RemoteUnavailableError("down"))
    keyring = make_keyring(store, remote)

    degraded = asyncio.run(keyring.compare_with_remote(ALICE))
    assert degraded.sync_managed is False
    assert fps(degraded.common) == [A]

    with pytest.raises(RemoteUnavailableError):
        asyncio.run(keyring.compare_with_remote(ALICE, require_remote_response=True))


def test_compare_report_serializes_camel_case_keys():
    store = FakeLocalStore(records=[local_key(A)])
    remote = ScriptedRemote(by_email=[remote_key(A), remote_key(B)])

    data = asyncio.run(make_keyring(store, remote).compare_with_remote(ALICE)).to_dict()

    assert set(data) == {"syncManaged", "localOnly", "common", "remoteOnly"}
    assert data["common"][0]["fingerprint"] == A.hex()
    assert data["remoteOnly"][0]["serialized"] is not None

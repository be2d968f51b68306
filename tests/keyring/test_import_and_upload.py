from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

import pytest

from keysync.domain.exceptions import RemoteUnavailableError
from keysync.domain.models import KeyRecord, KeyType
from keysync.infra.codec.json_key_codec import JsonKeyBlockCodec
from keysync.usecases.keyring_service import ReconcilingKeyRing

A = b"\x51" * 20
B = b"\x52" * 20


@dataclass
class RecordingStore:
    records: list[KeyRecord] = field(default_factory=list)
    imported: list[KeyRecord] = field(default_factory=list)
    restored: list[tuple] = field(default_factory=list)
    searches: list[tuple] = field(default_factory=list)

    def search_key(self, uid, key_type=None):
        self.searches.append((uid, key_type))
        return [r for r in self.records if uid in r.user_ids]

    def import_key(self, record, passphrase=None):
        self.imported.append(record)
        return record

    def restore_keyring(self, data, uid):
        self.restored.append((data, uid))
        return []


@dataclass
class UploadRemote:
    accepted: bool = True
    error: Exception | None = None
    uploads: list[tuple] = field(default_factory=list)

    async def import_keys(self, records, uid):
        self.uploads.append((list(records), uid))
        if self.error is not None:
            raise self.error
        return self.accepted


def make_keyring(store, remote=None) -> ReconcilingKeyRing:
    return ReconcilingKeyRing(store, JsonKeyBlockCodec(), remote=remote)


def test_import_key_canonicalizes_user_ids():
    store = RecordingStore()
    record = KeyRecord(fingerprint=A, user_ids=("alice@example.com", "Bob <bob@example.com>", "no email", ""))

    make_keyring(store).import_key(record)

    assert len(store.imported) == 1
    imported = store.imported[0]
    assert imported.user_ids == ("<alice@example.com>", "<bob@example.com>", "no email")
    assert imported.signatures_processed is True


def test_restore_keyring_wraps_bare_email_uid():
    store = RecordingStore()
    keyring = make_keyring(store)

    keyring.restore_keyring([b"blob"], "alice@example.com")
    keyring.restore_keyring([b"blob"], "Alice <alice@example.com>")

    assert [uid for _data, uid in store.restored] == ["<alice@example.com>", "Alice <alice@example.com>"]


def test_upload_sends_local_public_keys():
    record = KeyRecord(fingerprint=A, user_ids=("<alice@example.com>",))
    store = RecordingStore(records=[record])
    remote = UploadRemote(accepted=True)

    uploaded = asyncio.run(make_keyring(store, remote).upload_keys("<alice@example.com>"))

    assert uploaded is True
    assert remote.uploads == [([record], "<alice@example.com>")]
    assert store.searches == [("<alice@example.com>", KeyType.PUBLIC)]


def test_upload_without_remote_provider_returns_false():
    assert asyncio.run(make_keyring(RecordingStore()).upload_keys("<alice@example.com>")) is False


def test_upload_failure_degrades_or_propagates():
    store = RecordingStore(records=[KeyRecord(fingerprint=B, user_ids=("<bob@example.com>",))])
    remote = UploadRemote(error=RemoteUnavailableError("down"))
    keyring = make_keyring(store, remote)

    assert asyncio.run(keyring.upload_keys("<bob@example.com>")) is False
    with pytest.raises(RemoteUnavailableError):
        asyncio.run(keyring.upload_keys("<bob@example.com>", require_remote_response=True))

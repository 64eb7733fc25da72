"""
Tests for the client's encrypted local storage.
"""

import asyncio
import sqlite3

import pytest

from sealchat.client.storage import EncryptedStorage
from sealchat.crypto import CryptoContext, DeviceIdentityManager, StorageError


@pytest.fixture
def storage(tmp_path):
    store = EncryptedStorage("alice", str(tmp_path))
    assert store.unlock("correct horse")
    yield store
    store.close()


async def test_values_persist_across_reopen(storage, tmp_path):
    await storage.set("e2e_device_id", "device-1")
    storage.close()

    reopened = EncryptedStorage("alice", str(tmp_path))
    assert reopened.unlock("correct horse")
    assert await reopened.get("e2e_device_id") == "device-1"
    reopened.close()


async def test_values_are_encrypted_on_disk(storage):
    await storage.set("secret", "very secret value")

    raw = storage.db_path.read_bytes()
    assert b"very secret value" not in raw


def test_wrong_password_is_rejected(storage, tmp_path):
    storage.close()

    other = EncryptedStorage("alice", str(tmp_path))
    assert other.unlock("wrong password") is False
    assert not other.unlocked


async def test_get_set_delete(storage):
    assert await storage.get("missing") is None

    await storage.set("k", "v1")
    await storage.set("k", "v2")
    assert await storage.get("k") == "v2"

    await storage.delete("k")
    await storage.delete("k")
    assert await storage.get("k") is None


async def test_keys_by_prefix(storage):
    await storage.set("e2e_conv_key:dm:alice:bob", "a")
    await storage.set("e2e_conv_key:group:g1", "b")
    await storage.set("e2e_device_id", "c")
    await storage.set("e2eXconv", "d")

    assert storage.keys("e2e_conv_key:") == ["e2e_conv_key:dm:alice:bob", "e2e_conv_key:group:g1"]
    assert storage.keys("e2e_") == ["e2e_conv_key:dm:alice:bob", "e2e_conv_key:group:g1", "e2e_device_id"]
    assert len(storage.keys()) == 4


async def test_locked_storage_raises(tmp_path):
    store = EncryptedStorage("bob", str(tmp_path))

    with pytest.raises(StorageError):
        await store.get("anything")
    with pytest.raises(StorageError):
        await store.set("anything", "value")


async def test_tampered_entry_raises(storage):
    await storage.set("a", "first")
    await storage.set("b", "second")

    # Moving a ciphertext to another entry name must not decrypt
    db = sqlite3.connect(str(storage.db_path))
    value = db.execute("SELECT encrypted_value FROM entries WHERE key = 'a'").fetchone()[0]
    db.execute("UPDATE entries SET encrypted_value = ? WHERE key = 'b'", (value,))
    db.commit()
    db.close()

    with pytest.raises(StorageError):
        await storage.get("b")


class _NullDirectory:
    def __init__(self):
        self.registered = []

    async def register_device_key(self, device_id, public_key):
        self.registered.append(device_id)

    async def fetch_device_keys(self, user_ids):
        return []


async def test_device_identity_survives_restart(storage, tmp_path):
    directory = _NullDirectory()
    identity = await DeviceIdentityManager(storage, directory, CryptoContext()).ensure_identity()
    storage.close()

    reopened = EncryptedStorage("alice", str(tmp_path))
    assert reopened.unlock("correct horse")
    restored = await DeviceIdentityManager(reopened, directory, CryptoContext()).ensure_identity()
    reopened.close()

    assert restored == identity
    assert restored.private_key == identity.private_key
    assert directory.registered == [identity.device_id, identity.device_id]


async def test_concurrent_access_from_the_event_loop(storage):
    await asyncio.gather(*(storage.set(f"e2e_conv_key:group:g{i}", str(i)) for i in range(20)))

    values = await asyncio.gather(*(storage.get(f"e2e_conv_key:group:g{i}") for i in range(20)))

    assert values == [str(i) for i in range(20)]
    assert len(storage.keys("e2e_conv_key:")) == 20

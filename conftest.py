"""
Shared fixtures: in-memory stand-ins for the server directories and device caches,
and an ASGI-bound HTTP client for the real server.
"""

import asyncio
from collections import Counter
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import httpx
import pytest

from sealchat.crypto import (
    ConversationKeyBroker,
    ConversationScope,
    CryptoContext,
    DeviceIdentityManager,
    DevicePublicKeyRecord,
    DirectoryError,
    EncryptedPayload,
    EnvelopeConflict,
    KeyEnvelope,
    MessageCipher,
    StorageError,
    StoredMessage,
    TransportError,
)
from sealchat.client.api import ServerAPI
from sealchat.server.config import Settings
from sealchat.server.database import Database
from sealchat.server.main import create_app


class MemoryCache:
    """Dict-backed secure cache"""

    def __init__(self):
        self.data: Dict[str, str] = {}
        self.fail = False

    async def get(self, key: str) -> Optional[str]:
        if self.fail:
            raise StorageError("cache offline")
        return self.data.get(key)

    async def set(self, key: str, value: str) -> None:
        if self.fail:
            raise StorageError("cache offline")
        self.data[key] = value

    async def delete(self, key: str) -> None:
        self.data.pop(key, None)


class FakeServer:
    """State of the untrusted server shared by every simulated device"""

    def __init__(self):
        self.device_keys: Dict[Tuple[str, str], bytes] = {}
        self.envelopes: Dict[Tuple[ConversationScope, str], bytes] = {}
        self.messages: Dict[str, StoredMessage] = {}
        self.files: Dict[str, bytes] = {}
        self.calls: Counter = Counter()
        self.directory_down = False
        self.registration_down = False
        self.envelopes_down = False

    def owner_of(self, device_id: str) -> Optional[str]:
        for user_id, known_device in self.device_keys:
            if known_device == device_id:
                return user_id
        return None


class FakeDeviceAPI:
    """Directory, envelope store and transport as seen by one user's device"""

    def __init__(self, server: FakeServer, user_id: str):
        self.server = server
        self.user_id = user_id

    async def register_device_key(self, device_id: str, public_key: bytes) -> None:
        self.server.calls['register_device_key'] += 1
        if self.server.directory_down or self.server.registration_down:
            raise DirectoryError("directory unreachable")
        self.server.device_keys[(self.user_id, device_id)] = public_key

    async def fetch_device_keys(self, user_ids: Sequence[str]) -> List[DevicePublicKeyRecord]:
        self.server.calls['fetch_device_keys'] += 1
        await asyncio.sleep(0)
        if self.server.directory_down:
            raise DirectoryError("directory unreachable")
        return [
            DevicePublicKeyRecord(user_id=user_id, device_id=device_id, public_key=public_key)
            for (user_id, device_id), public_key in self.server.device_keys.items()
            if user_id in user_ids
        ]

    async def fetch_envelope(self, scope: ConversationScope, device_id: str) -> Optional[bytes]:
        self.server.calls['fetch_envelope'] += 1
        await asyncio.sleep(0)
        if self.server.envelopes_down:
            raise DirectoryError("envelope store unreachable")
        if self.server.owner_of(device_id) != self.user_id:
            return None
        return self.server.envelopes.get((scope, device_id))

    async def save_envelopes(
        self,
        scope: ConversationScope,
        entries: Sequence[KeyEnvelope],
        if_absent: bool = False,
    ) -> None:
        self.server.calls['save_envelopes'] += 1
        await asyncio.sleep(0)
        if self.server.envelopes_down:
            raise DirectoryError("envelope store unreachable")
        if if_absent and any(stored_scope == scope for stored_scope, _ in self.server.envelopes):
            raise EnvelopeConflict(f"{scope} already has envelopes")
        for entry in entries:
            if self.server.owner_of(entry.device_id) is not None:
                self.server.envelopes[(scope, entry.device_id)] = entry.sealed_key

    async def mark_encrypted(self, scope: ConversationScope, message_id: str, payload: EncryptedPayload) -> None:
        self.server.calls['mark_encrypted'] += 1
        wire = payload.to_dict()
        message = self.server.messages[message_id]
        message.content = wire['ciphertext']
        message.nonce = wire['nonce']
        message.is_encrypted = True

    async def fetch_file(self, location: str) -> bytes:
        if location not in self.server.files:
            raise TransportError(f"{location} not found")
        return self.server.files[location]


@dataclass
class Device:
    """One simulated installation"""
    user_id: str
    cache: MemoryCache
    api: object
    crypto: CryptoContext
    identity: DeviceIdentityManager
    broker: ConversationKeyBroker
    cipher: MessageCipher


@pytest.fixture
def server() -> FakeServer:
    return FakeServer()


@pytest.fixture
def make_device(server):
    def factory(user_id: str, cache: Optional[MemoryCache] = None, conditional_writes: bool = True) -> Device:
        cache = cache or MemoryCache()
        api = FakeDeviceAPI(server, user_id)
        crypto = CryptoContext()
        identity = DeviceIdentityManager(cache, api, crypto)
        broker = ConversationKeyBroker(identity, cache, api, api, crypto, conditional_writes=conditional_writes)
        cipher = MessageCipher(broker, crypto, api)
        return Device(user_id, cache, api, crypto, identity, broker, cipher)
    return factory


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        secret_key="test-secret",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'server.db'}",
    )


@pytest.fixture
async def database(settings):
    db = Database(settings.database_url)
    await db.create_tables()
    yield db
    await db.dispose()


@pytest.fixture
def app(settings, database):
    return create_app(settings, database)


@pytest.fixture
async def http(app):
    """Client factory bound to the ASGI app; each call is a separate device"""
    clients = []

    def factory() -> httpx.AsyncClient:
        client = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver")
        clients.append(client)
        return client

    yield factory
    for client in clients:
        await client.aclose()


@pytest.fixture
def connect(http):
    """Register or log in a device against the ASGI app through ServerAPI"""
    async def factory(username: str, password: str = "pw", register: bool = True) -> Device:
        api = ServerAPI("http://testserver", http_client=http())
        if register:
            await api.register(username, password)
        else:
            await api.login(username, password)
        cache = MemoryCache()
        crypto = CryptoContext()
        identity = DeviceIdentityManager(cache, api, crypto)
        broker = ConversationKeyBroker(identity, cache, api, api, crypto)
        cipher = MessageCipher(broker, crypto, api)
        return Device(username, cache, api, crypto, identity, broker, cipher)
    return factory

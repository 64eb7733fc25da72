"""
Per-installation device identity.

Each installation owns one Curve25519 keypair and a random device id. The public
half is registered with the server's device key directory so that other devices
can seal conversation keys for it; the private half never leaves the cache.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from .errors import DirectoryError, StorageError
from .interfaces import DeviceKeyDirectory, SecureCache
from .primitives import CryptoContext, PUBLIC_KEY_BYTES, decode_base64, encode_base64


logger = logging.getLogger(__name__)

DEVICE_ID_KEY = "e2e_device_id"
DEVICE_KEYPAIR_KEY = "e2e_device_keypair"


@dataclass(frozen=True)
class DeviceIdentity:
    """
    Attributes:
        device_id: Random UUID string
        public_key: Curve25519 public key (32 bytes)
        private_key: Curve25519 private key (32 bytes), never sent anywhere
    """
    device_id: str
    public_key: bytes
    private_key: bytes

    def __repr__(self) -> str:
        return f"DeviceIdentity(device_id={self.device_id!r})"


class DeviceIdentityManager:
    """
    Creates, persists and registers this device's identity.

    Args:
        cache: Local secure cache holding the identity
        directory: Server-side device key directory
        crypto: Crypto context used for key generation
    """

    def __init__(self, cache: SecureCache, directory: DeviceKeyDirectory, crypto: CryptoContext):
        self.cache = cache
        self.directory = directory
        self.crypto = crypto
        self._identity: Optional[DeviceIdentity] = None
        self._registered = False
        self._lock = asyncio.Lock()

    @property
    def registered(self) -> bool:
        """Whether the public key reached the directory during this process"""
        return self._registered

    async def ensure_identity(self) -> DeviceIdentity:
        """
        Return this device's identity, creating it on first use.

        Registration with the directory is attempted until it succeeds once; a
        failed attempt is logged and the identity is still returned.

        Raises:
            StorageError: If the cache is unavailable or holds a corrupted identity
        """
        if self._identity is not None and self._registered:
            return self._identity

        async with self._lock:
            if self._identity is None:
                self._identity = await self._load_or_create()
            if not self._registered:
                await self._register(self._identity)
            return self._identity

    async def refresh_registration(self) -> bool:
        """
        Re-post the public key, bumping the directory's last-seen marker.

        Returns:
            True if the directory accepted the registration
        """
        identity = await self.ensure_identity()
        async with self._lock:
            return await self._register(identity)

    async def _load_or_create(self) -> DeviceIdentity:
        device_id = await self.cache.get(DEVICE_ID_KEY)
        if not device_id:
            device_id = str(uuid.uuid4())
            await self.cache.set(DEVICE_ID_KEY, device_id)
            logger.info("Created device id %s", device_id)

        stored = await self.cache.get(DEVICE_KEYPAIR_KEY)
        if stored:
            public_key, private_key = self._decode_keypair(stored)
        else:
            public_key, private_key = self.crypto.generate_keypair()
            await self.cache.set(DEVICE_KEYPAIR_KEY, json.dumps({
                'publicKey': encode_base64(public_key),
                'privateKey': encode_base64(private_key),
            }))
            logger.info("Generated keypair for device %s", device_id)

        return DeviceIdentity(device_id=device_id, public_key=public_key, private_key=private_key)

    @staticmethod
    def _decode_keypair(stored: str):
        try:
            data = json.loads(stored)
            public_key = decode_base64(data['publicKey'])
            private_key = decode_base64(data['privateKey'])
        except (ValueError, KeyError, TypeError) as e:
            raise StorageError(f"Corrupted device keypair: {e}") from e
        if len(public_key) != PUBLIC_KEY_BYTES or len(private_key) != PUBLIC_KEY_BYTES:
            raise StorageError("Corrupted device keypair: wrong key length")
        return public_key, private_key

    async def _register(self, identity: DeviceIdentity) -> bool:
        try:
            await self.directory.register_device_key(identity.device_id, identity.public_key)
        except DirectoryError as e:
            logger.warning("Device key registration failed, will retry: %s", e)
            return False
        self._registered = True
        return True

"""
Conversation key distribution.

Every conversation scope shares one symmetric key. The first device that needs it
mints it and seals a copy for every registered device of every participant; other
devices recover it by opening the envelope stored for them. The server only ever
holds sealed copies.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Sequence

from .errors import DirectoryError, EnvelopeConflict, EnvelopeError, KeyUnavailable, StorageError
from .identity import DeviceIdentity, DeviceIdentityManager
from .interfaces import DeviceKeyDirectory, KeyEnvelope, KeyEnvelopeStore, SecureCache
from .primitives import CryptoContext, KEY_BYTES, decode_base64, encode_base64
from .scope import ConversationScope


logger = logging.getLogger(__name__)


class ConversationKeyBroker:
    """
    Guarantees the caller ends up holding a scope's single conversation key.

    Args:
        identity: This device's identity manager
        cache: Local secure cache for conversation keys
        directory: Server-side device key directory
        envelopes: Server-side key envelope store
        crypto: Crypto context
        conditional_writes: Ask the server to reject minting writes when the scope
            already has envelopes, closing the cross-device minting race
    """

    def __init__(
        self,
        identity: DeviceIdentityManager,
        cache: SecureCache,
        directory: DeviceKeyDirectory,
        envelopes: KeyEnvelopeStore,
        crypto: CryptoContext,
        conditional_writes: bool = True,
    ):
        self.identity = identity
        self.cache = cache
        self.directory = directory
        self.envelopes = envelopes
        self.crypto = crypto
        self.conditional_writes = conditional_writes
        self._scope_locks: Dict[ConversationScope, asyncio.Lock] = {}

    async def get_cached_key(self, scope: ConversationScope) -> Optional[bytes]:
        """
        Look up a conversation key in the local cache only.

        Raises:
            StorageError: If the cache fails or holds a corrupted key
        """
        stored = await self.cache.get(scope.cache_key)
        if not stored:
            return None
        try:
            key = decode_base64(stored)
        except ValueError as e:
            raise StorageError(f"Corrupted conversation key for {scope}") from e
        if len(key) != KEY_BYTES:
            raise StorageError(f"Corrupted conversation key for {scope}")
        return key

    async def ensure_conversation_key(
        self,
        scope: ConversationScope,
        recipient_user_ids: Sequence[str],
    ) -> bytes:
        """
        Return the scope's conversation key from cache, from this device's envelope,
        or by minting and distributing a new one.

        Args:
            scope: Conversation scope
            recipient_user_ids: Users whose devices receive a sealed copy when minting

        Raises:
            StorageError: If the local cache fails
            KeyUnavailable: If the directories cannot be reached, this device is not
                registered and would have to mint, or another device won the
                minting race without sealing a copy for this device
        """
        cached = await self.get_cached_key(scope)
        if cached:
            return cached

        async with self._lock_for(scope):
            # Another caller may have finished bootstrapping while we waited
            cached = await self.get_cached_key(scope)
            if cached:
                return cached

            identity = await self.identity.ensure_identity()
            sealed = await self._fetch_own_envelope(scope, identity)
            key = self._try_open(scope, identity, sealed)
            if key is None:
                self._require_registered(identity)
                # A present but unopenable envelope means the scope is already keyed,
                # so a conditional write could never succeed
                conditional = self.conditional_writes and sealed is None
                key = await self._mint(scope, recipient_user_ids, identity, conditional)
            await self.cache.set(scope.cache_key, encode_base64(key))
            return key

    async def share_conversation_key(
        self,
        scope: ConversationScope,
        user_ids: Sequence[str],
    ) -> int:
        """
        Seal the key this device already holds for every current device of the
        given users, covering devices registered after the key was minted.

        Returns:
            Number of envelopes written

        Raises:
            KeyUnavailable: If this device does not hold the key or the directories fail
        """
        key = await self.get_cached_key(scope)
        if key is None:
            raise KeyUnavailable(f"No conversation key held for {scope}")
        identity = await self.identity.ensure_identity()
        entries = await self._seal_for_users(key, user_ids, identity)
        await self._save(scope, entries, if_absent=False)
        logger.info("Shared key for %s with %d devices", scope, len(entries))
        return len(entries)

    async def rotate_conversation_key(
        self,
        scope: ConversationScope,
        user_ids: Sequence[str],
    ) -> bytes:
        """
        Replace the scope's key with a freshly minted one and overwrite every
        envelope. Messages encrypted under the previous key stay readable only to
        devices that still cache it.

        Raises:
            KeyUnavailable: If the directories cannot be reached
        """
        async with self._lock_for(scope):
            identity = await self.identity.ensure_identity()
            self._require_registered(identity)
            key = self.crypto.generate_conversation_key()
            entries = await self._seal_for_users(key, user_ids, identity)
            await self._save(scope, entries, if_absent=False)
            await self.cache.set(scope.cache_key, encode_base64(key))
            logger.info("Rotated key for %s", scope)
            return key

    def _require_registered(self, identity: DeviceIdentity) -> None:
        # Envelopes addressed to devices missing from the directory are dropped
        if not self.identity.registered:
            raise KeyUnavailable(
                f"Device {identity.device_id} is not registered with the key directory"
            )

    def _lock_for(self, scope: ConversationScope) -> asyncio.Lock:
        lock = self._scope_locks.get(scope)
        if lock is None:
            lock = self._scope_locks[scope] = asyncio.Lock()
        return lock

    async def _fetch_own_envelope(
        self,
        scope: ConversationScope,
        identity: DeviceIdentity,
    ) -> Optional[bytes]:
        try:
            return await self.envelopes.fetch_envelope(scope, identity.device_id)
        except DirectoryError as e:
            raise KeyUnavailable(f"Key envelope lookup failed for {scope}: {e}") from e

    def _try_open(
        self,
        scope: ConversationScope,
        identity: DeviceIdentity,
        sealed: Optional[bytes],
    ) -> Optional[bytes]:
        if sealed is None:
            return None
        try:
            return self.crypto.open(sealed, identity.public_key, identity.private_key)
        except EnvelopeError as e:
            logger.warning("Envelope for %s on device %s could not be opened: %s",
                           scope, identity.device_id, e)
            return None

    async def _mint(
        self,
        scope: ConversationScope,
        recipient_user_ids: Sequence[str],
        identity: DeviceIdentity,
        conditional: bool,
    ) -> bytes:
        key = self.crypto.generate_conversation_key()
        entries = await self._seal_for_users(key, recipient_user_ids, identity)

        try:
            await self._save(scope, entries, if_absent=conditional)
        except EnvelopeConflict:
            logger.info("Lost key minting race for %s, adopting the stored key", scope)
            sealed = await self._fetch_own_envelope(scope, identity)
            winner = self._try_open(scope, identity, sealed)
            if winner is None:
                raise KeyUnavailable(
                    f"{scope} already has a key that was not shared with this device"
                )
            return winner

        logger.info("Minted key for %s sealed for %d devices", scope, len(entries))
        return key

    async def _seal_for_users(
        self,
        key: bytes,
        user_ids: Sequence[str],
        identity: DeviceIdentity,
    ) -> List[KeyEnvelope]:
        unique_ids = sorted(set(user_ids))
        try:
            records = await self.directory.fetch_device_keys(unique_ids) if unique_ids else []
        except DirectoryError as e:
            raise KeyUnavailable(f"Device key lookup failed: {e}") from e

        entries: List[KeyEnvelope] = []
        sealed_devices = set()
        for record in records:
            if record.device_id in sealed_devices:
                continue
            try:
                sealed = self.crypto.seal(key, record.public_key)
            except EnvelopeError as e:
                logger.warning("Skipping device %s of %s: %s", record.device_id, record.user_id, e)
                continue
            entries.append(KeyEnvelope(device_id=record.device_id, sealed_key=sealed))
            sealed_devices.add(record.device_id)

        # The minting device keeps a copy even when it is not among the recipients
        if identity.device_id not in sealed_devices:
            entries.append(KeyEnvelope(
                device_id=identity.device_id,
                sealed_key=self.crypto.seal(key, identity.public_key),
            ))
        return entries

    async def _save(self, scope: ConversationScope, entries: List[KeyEnvelope], if_absent: bool) -> None:
        try:
            await self.envelopes.save_envelopes(scope, entries, if_absent=if_absent)
        except EnvelopeConflict:
            raise
        except DirectoryError as e:
            raise KeyUnavailable(f"Storing key envelopes failed for {scope}: {e}") from e

"""
Message and file encryption on top of the conversation key broker.

Read paths never raise: a message that cannot be decrypted resolves to None and
the caller substitutes PLACEHOLDER, so one bad message cannot break a
conversation's rendering.
"""

import logging
import re
from typing import Optional, Sequence, Union

from .broker import ConversationKeyBroker
from .errors import E2EError
from .interfaces import MessageTransport, StoredMessage
from .primitives import CryptoContext, EncryptedPayload, as_bytes
from .scope import ConversationScope


logger = logging.getLogger(__name__)

PLACEHOLDER = "[Encrypted message]"

# Shortest base64 text an AEAD ciphertext can produce (16-byte tag)
MIN_CIPHERTEXT_LENGTH = 24
_CIPHERTEXT_SHAPE = re.compile(r"^[A-Za-z0-9+/]+={0,2}$")


def looks_encrypted(content: str) -> bool:
    """
    Guess whether nonce-less, unflagged content is already ciphertext.

    Long content without whitespace made only of base64 characters is taken as
    ciphertext; everything else is legacy plaintext. Whitespace-free plaintext of
    that shape is misclassified.
    """
    if len(content) < MIN_CIPHERTEXT_LENGTH:
        return False
    return bool(_CIPHERTEXT_SHAPE.match(content))


class MessageCipher:
    """
    Encrypts and decrypts message text and file bytes for conversation scopes.

    Args:
        broker: Supplies conversation keys
        crypto: Crypto context
        transport: Used for file downloads and migration write-back
    """

    def __init__(
        self,
        broker: ConversationKeyBroker,
        crypto: CryptoContext,
        transport: Optional[MessageTransport] = None,
    ):
        self.broker = broker
        self.crypto = crypto
        self.transport = transport

    async def encrypt_message(
        self,
        scope: ConversationScope,
        recipient_user_ids: Sequence[str],
        plaintext: str,
    ) -> EncryptedPayload:
        """
        Encrypt message text under the scope's key with a fresh nonce.

        Raises:
            KeyUnavailable: If no key can be obtained for the scope
            StorageError: If the local cache fails
        """
        key = await self.broker.ensure_conversation_key(scope, recipient_user_ids)
        return self.crypto.encrypt(key, plaintext.encode("utf-8"))

    async def decrypt_message(
        self,
        scope: ConversationScope,
        ciphertext: Union[bytes, str],
        nonce: Union[bytes, str],
    ) -> Optional[str]:
        """
        Decrypt message text using the locally cached key only.

        Returns:
            The plaintext, or None if the key is not cached or the message does
            not authenticate
        """
        plaintext = await self._decrypt(scope, ciphertext, nonce)
        if plaintext is None:
            return None
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError:
            logger.warning("Decrypted message in %s is not UTF-8", scope)
            return None

    async def encrypt_file(
        self,
        scope: ConversationScope,
        recipient_user_ids: Sequence[str],
        data: bytes,
    ) -> EncryptedPayload:
        """Encrypt raw file bytes; the ciphertext is uploaded as an opaque blob"""
        key = await self.broker.ensure_conversation_key(scope, recipient_user_ids)
        return self.crypto.encrypt(key, data)

    async def decrypt_file(
        self,
        scope: ConversationScope,
        location: str,
        nonce: Union[bytes, str],
    ) -> Optional[bytes]:
        """
        Download a file's ciphertext through the transport and decrypt it.

        Returns:
            The file bytes, or None if the download, key lookup or
            authentication fails
        """
        if self.transport is None:
            logger.warning("No transport to fetch file %s", location)
            return None
        try:
            ciphertext = await self.transport.fetch_file(location)
        except E2EError as e:
            logger.warning("Failed to fetch file %s: %s", location, e)
            return None
        return await self._decrypt(scope, ciphertext, nonce)

    async def migrate_legacy_message(
        self,
        scope: ConversationScope,
        recipient_user_ids: Sequence[str],
        message: StoredMessage,
    ) -> Optional[EncryptedPayload]:
        """
        Re-encrypt a legacy plaintext message and write it back as ciphertext.

        Best-effort and idempotent: repeated or concurrent attempts each write a
        complete ciphertext/nonce pair, the last write wins.

        Returns:
            The payload written back, or None if the message needs no migration
            or the attempt failed
        """
        if message.is_encrypted or message.nonce or not message.content:
            return None
        if looks_encrypted(message.content):
            return None
        if self.transport is None:
            return None

        try:
            payload = await self.encrypt_message(scope, recipient_user_ids, message.content)
            await self.transport.mark_encrypted(scope, message.message_id, payload)
        except E2EError as e:
            logger.warning("Failed to migrate message %s in %s: %s", message.message_id, scope, e)
            return None

        logger.info("Migrated legacy message %s in %s", message.message_id, scope)
        return payload

    async def render_message(
        self,
        scope: ConversationScope,
        recipient_user_ids: Sequence[str],
        message: StoredMessage,
    ) -> str:
        """
        Produce the text to display for a stored message, migrating legacy
        plaintext on the way.
        """
        if message.is_encrypted or message.nonce:
            if not message.nonce:
                return PLACEHOLDER
            decrypted = await self.decrypt_message(scope, message.content, message.nonce)
            return PLACEHOLDER if decrypted is None else decrypted

        if looks_encrypted(message.content):
            return PLACEHOLDER

        # The transport may rewrite the record in place once migrated
        text = message.content
        if recipient_user_ids:
            await self.migrate_legacy_message(scope, recipient_user_ids, message)
        return text

    async def _decrypt(
        self,
        scope: ConversationScope,
        ciphertext: Union[bytes, str],
        nonce: Union[bytes, str],
    ) -> Optional[bytes]:
        try:
            key = await self.broker.get_cached_key(scope)
        except E2EError as e:
            logger.warning("Key lookup failed for %s: %s", scope, e)
            return None
        if key is None:
            return None

        try:
            payload = EncryptedPayload(ciphertext=as_bytes(ciphertext), nonce=as_bytes(nonce))
        except ValueError:
            return None

        try:
            return self.crypto.decrypt(key, payload)
        except E2EError:
            return None

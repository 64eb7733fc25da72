"""
Narrow interfaces to the collaborators the key distribution protocol relies on.

Implementations live in sealchat.client (HTTP and on-disk) and in the test suite
(in-memory). Every method is a coroutine.
"""

from dataclasses import dataclass
from typing import List, Optional, Protocol, Sequence

from .primitives import EncryptedPayload, decode_base64, encode_base64
from .scope import ConversationScope


@dataclass(frozen=True)
class DevicePublicKeyRecord:
    """Directory entry used to seal a new key for every device of a participant"""
    user_id: str
    device_id: str
    public_key: bytes

    def to_dict(self) -> dict:
        return {
            'userId': self.user_id,
            'deviceId': self.device_id,
            'publicKey': encode_base64(self.public_key),
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'DevicePublicKeyRecord':
        return cls(
            user_id=data['userId'],
            device_id=data['deviceId'],
            public_key=decode_base64(data['publicKey']),
        )


@dataclass(frozen=True)
class KeyEnvelope:
    """A conversation key sealed for exactly one device"""
    device_id: str
    sealed_key: bytes

    def to_dict(self) -> dict:
        return {
            'deviceId': self.device_id,
            'encryptedKey': encode_base64(self.sealed_key),
        }


@dataclass
class StoredMessage:
    """
    A message as the transport returns it.

    Attributes:
        message_id: Transport identifier, used for migration write-back
        content: Base64 ciphertext, or plaintext for legacy rows
        nonce: Base64 nonce, None for legacy rows
        is_encrypted: Explicit flag set by every encrypted write
        sender_id: Author of the message
    """
    message_id: str
    content: str
    nonce: Optional[str] = None
    is_encrypted: bool = False
    sender_id: Optional[str] = None


class SecureCache(Protocol):
    """Durable per-device key/value storage"""

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str) -> None: ...

    async def delete(self, key: str) -> None: ...


class DeviceKeyDirectory(Protocol):
    """Server-side map from (user id, device id) to public key"""

    async def fetch_device_keys(self, user_ids: Sequence[str]) -> List[DevicePublicKeyRecord]: ...

    async def register_device_key(self, device_id: str, public_key: bytes) -> None: ...


class KeyEnvelopeStore(Protocol):
    """Server-side map from (scope, device id) to a sealed conversation key"""

    async def fetch_envelope(self, scope: ConversationScope, device_id: str) -> Optional[bytes]: ...

    async def save_envelopes(
        self,
        scope: ConversationScope,
        entries: Sequence[KeyEnvelope],
        if_absent: bool = False,
    ) -> None: ...


class MessageTransport(Protocol):
    """The parts of the message/file transport this core calls back into"""

    async def mark_encrypted(
        self,
        scope: ConversationScope,
        message_id: str,
        payload: EncryptedPayload,
    ) -> None: ...

    async def fetch_file(self, location: str) -> bytes: ...

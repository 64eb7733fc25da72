"""
Cryptographic core for multi-device end-to-end encrypted chat.

Implements:
- Per-device Curve25519 identities registered with a server-side directory
- One symmetric key per conversation, distributed as sealed per-device envelopes
- XChaCha20-Poly1305 encryption of messages and files, with legacy migration
"""

from .broker import ConversationKeyBroker
from .cipher import PLACEHOLDER, MessageCipher, looks_encrypted
from .errors import (
    AuthenticationFailure,
    CryptoError,
    DirectoryError,
    E2EError,
    EnvelopeConflict,
    EnvelopeError,
    KeyUnavailable,
    StorageError,
    TransportError,
)
from .identity import DeviceIdentity, DeviceIdentityManager
from .interfaces import DevicePublicKeyRecord, KeyEnvelope, StoredMessage
from .primitives import CryptoContext, EncryptedPayload
from .scope import ConversationScope, ScopeKind, dm_scope_id

__all__ = [
    'AuthenticationFailure',
    'ConversationKeyBroker',
    'ConversationScope',
    'CryptoContext',
    'CryptoError',
    'DeviceIdentity',
    'DeviceIdentityManager',
    'DevicePublicKeyRecord',
    'DirectoryError',
    'E2EError',
    'EncryptedPayload',
    'EnvelopeConflict',
    'EnvelopeError',
    'KeyEnvelope',
    'KeyUnavailable',
    'MessageCipher',
    'PLACEHOLDER',
    'ScopeKind',
    'StorageError',
    'StoredMessage',
    'TransportError',
    'dm_scope_id',
    'looks_encrypted',
]

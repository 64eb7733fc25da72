"""
Cryptographic Primitives for End-to-End Encryption

This module provides the foundational operations of the key distribution scheme:
- Curve25519 device keypairs
- Anonymous sealing of conversation keys (libsodium sealed boxes)
- XChaCha20-Poly1305-IETF authenticated encryption of messages and files

All primitives are reached through a CryptoContext instance rather than module
state, so several simulated devices can share one process.
"""

import base64
import binascii
from dataclasses import dataclass
from typing import Callable, Dict, Tuple, Union

import nacl.bindings
import nacl.exceptions
import nacl.utils
from nacl.public import PrivateKey, PublicKey, SealedBox

from .errors import AuthenticationFailure, EnvelopeError


KEY_BYTES = nacl.bindings.crypto_aead_xchacha20poly1305_ietf_KEYBYTES  # 32
NONCE_BYTES = nacl.bindings.crypto_aead_xchacha20poly1305_ietf_NPUBBYTES  # 24
PUBLIC_KEY_BYTES = PublicKey.SIZE  # 32
TAG_BYTES = nacl.bindings.crypto_aead_xchacha20poly1305_ietf_ABYTES  # 16


def encode_base64(data: bytes) -> str:
    """Encode bytes as standard padded base64 text"""
    return base64.b64encode(data).decode("ascii")


def decode_base64(data: str) -> bytes:
    """
    Decode standard padded base64 text.

    Raises:
        ValueError: If the text is not valid base64
    """
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, TypeError) as e:
        raise ValueError(f"Invalid base64 encoding: {e}") from e


@dataclass(frozen=True)
class EncryptedPayload:
    """
    Output of one encryption call.

    Attributes:
        ciphertext: AEAD ciphertext including the 16-byte tag
        nonce: 24-byte nonce drawn for this call only
    """
    ciphertext: bytes
    nonce: bytes

    def to_dict(self) -> Dict[str, str]:
        """Convert to the wire form exchanged with the transport"""
        return {
            'ciphertext': encode_base64(self.ciphertext),
            'nonce': encode_base64(self.nonce),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> 'EncryptedPayload':
        """Create from the wire form"""
        return cls(
            ciphertext=decode_base64(data['ciphertext']),
            nonce=decode_base64(data['nonce']),
        )


class CryptoContext:
    """
    Explicit handle on the crypto library.

    Args:
        random_bytes: CSPRNG used for keys and nonces; tests may inject their own
    """

    def __init__(self, random_bytes: Callable[[int], bytes] = nacl.utils.random):
        self._random_bytes = random_bytes

    def generate_keypair(self) -> Tuple[bytes, bytes]:
        """
        Generate a Curve25519 keypair for a device.

        Returns:
            Tuple of (public_key, private_key), 32 raw bytes each
        """
        private_key = PrivateKey(self._random_bytes(PrivateKey.SIZE))
        return bytes(private_key.public_key), bytes(private_key)

    def generate_conversation_key(self) -> bytes:
        """Generate a fresh 32-byte conversation key"""
        return self._random_bytes(KEY_BYTES)

    def new_nonce(self) -> bytes:
        """Draw a fresh 24-byte nonce"""
        return self._random_bytes(NONCE_BYTES)

    def encrypt(self, key: bytes, plaintext: bytes) -> EncryptedPayload:
        """
        Encrypt bytes with XChaCha20-Poly1305-IETF under a fresh nonce.

        Args:
            key: 32-byte conversation key
            plaintext: Data to encrypt

        Returns:
            EncryptedPayload holding ciphertext and nonce
        """
        nonce = self.new_nonce()
        ciphertext = nacl.bindings.crypto_aead_xchacha20poly1305_ietf_encrypt(
            plaintext, None, nonce, key
        )
        return EncryptedPayload(ciphertext=ciphertext, nonce=nonce)

    def decrypt(self, key: bytes, payload: EncryptedPayload) -> bytes:
        """
        Decrypt and authenticate a payload.

        Raises:
            AuthenticationFailure: If the tag does not verify or the inputs are malformed
        """
        if len(payload.nonce) != NONCE_BYTES:
            raise AuthenticationFailure("Invalid nonce length")
        if len(payload.ciphertext) < TAG_BYTES:
            raise AuthenticationFailure("Ciphertext too short")
        try:
            return nacl.bindings.crypto_aead_xchacha20poly1305_ietf_decrypt(
                payload.ciphertext, None, payload.nonce, key
            )
        except nacl.exceptions.CryptoError as e:
            raise AuthenticationFailure(f"Decryption failed: {e}") from e

    def seal(self, key: bytes, recipient_public_key: bytes) -> bytes:
        """
        Seal a conversation key for one device (anonymous public-key encryption).

        Raises:
            EnvelopeError: If the public key is malformed
        """
        try:
            return SealedBox(PublicKey(recipient_public_key)).encrypt(key)
        except nacl.exceptions.CryptoError as e:
            raise EnvelopeError(f"Sealing failed: {e}") from e

    def open(self, sealed: bytes, public_key: bytes, private_key: bytes) -> bytes:
        """
        Open a sealed envelope with the device keypair.

        Raises:
            EnvelopeError: If the keypair does not match or the envelope is corrupted
        """
        try:
            private = PrivateKey(private_key)
            if bytes(private.public_key) != public_key:
                raise EnvelopeError("Public key does not belong to private key")
            opened = SealedBox(private).decrypt(sealed)
        except nacl.exceptions.CryptoError as e:
            raise EnvelopeError(f"Opening failed: {e}") from e
        if len(opened) != KEY_BYTES:
            raise EnvelopeError("Envelope does not hold a conversation key")
        return opened


def as_bytes(value: Union[bytes, str]) -> bytes:
    """Accept raw bytes or base64 text from the transport"""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    return decode_base64(value)

"""
Tests for cryptographic primitives and conversation scopes.
"""

import pytest

from sealchat.crypto import (
    AuthenticationFailure,
    ConversationScope,
    CryptoContext,
    EncryptedPayload,
    EnvelopeError,
    ScopeKind,
    dm_scope_id,
    looks_encrypted,
)
from sealchat.crypto.primitives import KEY_BYTES, NONCE_BYTES, decode_base64, encode_base64


@pytest.fixture
def crypto():
    return CryptoContext()


def flip_bit(data: bytes, index: int) -> bytes:
    buf = bytearray(data)
    buf[index // 8] ^= 1 << (index % 8)
    return bytes(buf)


def test_keypair_generation(crypto):
    public_key, private_key = crypto.generate_keypair()
    other_public, other_private = crypto.generate_keypair()

    assert len(public_key) == 32 and len(private_key) == 32
    assert public_key != other_public
    assert private_key != other_private


@pytest.mark.parametrize("plaintext", [b"", b"Hello, World!", "héllo wörld ✓".encode(), bytes(range(256)) * 40])
def test_encryption_round_trip(crypto, plaintext):
    key = crypto.generate_conversation_key()

    payload = crypto.encrypt(key, plaintext)

    assert len(key) == KEY_BYTES
    assert len(payload.nonce) == NONCE_BYTES
    assert crypto.decrypt(key, payload) == plaintext


def test_nonce_freshness(crypto):
    key = crypto.generate_conversation_key()

    first = crypto.encrypt(key, b"same plaintext")
    second = crypto.encrypt(key, b"same plaintext")

    assert first.nonce != second.nonce
    assert first.ciphertext != second.ciphertext


def test_tampered_ciphertext_is_rejected(crypto):
    key = crypto.generate_conversation_key()
    payload = crypto.encrypt(key, b"attack at dawn")

    for index in range(0, len(payload.ciphertext) * 8, 7):
        tampered = EncryptedPayload(flip_bit(payload.ciphertext, index), payload.nonce)
        with pytest.raises(AuthenticationFailure):
            crypto.decrypt(key, tampered)


def test_tampered_nonce_is_rejected(crypto):
    key = crypto.generate_conversation_key()
    payload = crypto.encrypt(key, b"attack at dawn")

    for index in range(NONCE_BYTES * 8):
        tampered = EncryptedPayload(payload.ciphertext, flip_bit(payload.nonce, index))
        with pytest.raises(AuthenticationFailure):
            crypto.decrypt(key, tampered)


def test_wrong_key_and_truncated_input_are_rejected(crypto):
    key = crypto.generate_conversation_key()
    payload = crypto.encrypt(key, b"secret")

    with pytest.raises(AuthenticationFailure):
        crypto.decrypt(crypto.generate_conversation_key(), payload)
    with pytest.raises(AuthenticationFailure):
        crypto.decrypt(key, EncryptedPayload(payload.ciphertext[:10], payload.nonce))
    with pytest.raises(AuthenticationFailure):
        crypto.decrypt(key, EncryptedPayload(payload.ciphertext, payload.nonce[:12]))


def test_envelope_correctness(crypto):
    public_key, private_key = crypto.generate_keypair()
    key = crypto.generate_conversation_key()

    sealed = crypto.seal(key, public_key)

    assert key not in sealed
    assert crypto.open(sealed, public_key, private_key) == key


def test_envelope_rejects_mismatched_keys(crypto):
    public_key, _ = crypto.generate_keypair()
    other_public, other_private = crypto.generate_keypair()
    sealed = crypto.seal(crypto.generate_conversation_key(), public_key)

    with pytest.raises(EnvelopeError):
        crypto.open(sealed, other_public, other_private)
    with pytest.raises(EnvelopeError):
        crypto.open(sealed, public_key, other_private)
    with pytest.raises(EnvelopeError):
        crypto.open(sealed[:-1], public_key, other_private)


def test_sealing_for_malformed_public_key(crypto):
    with pytest.raises(EnvelopeError):
        crypto.seal(crypto.generate_conversation_key(), b"short")


def test_injected_random_source():
    counter = iter(range(1, 1000))
    crypto = CryptoContext(random_bytes=lambda size: bytes([next(counter)]) * size)

    assert crypto.new_nonce() != crypto.new_nonce()
    assert crypto.generate_conversation_key() == bytes([3]) * KEY_BYTES


def test_payload_wire_form(crypto):
    payload = crypto.encrypt(crypto.generate_conversation_key(), b"wire")
    wire = payload.to_dict()

    assert set(wire) == {'ciphertext', 'nonce'}
    assert decode_base64(wire['nonce']) == payload.nonce
    assert EncryptedPayload.from_dict(wire) == payload


def test_base64_decoding_rejects_garbage():
    assert decode_base64(encode_base64(b"\x00\xff")) == b"\x00\xff"
    with pytest.raises(ValueError):
        decode_base64("not base64!")


@pytest.mark.parametrize("a,b", [("alice", "bob"), ("bob", "alice"), ("u2", "u10"), ("same", "same")])
def test_dm_scope_symmetry(a, b):
    assert dm_scope_id(a, b) == dm_scope_id(b, a)
    assert ConversationScope.direct(a, b) == ConversationScope.direct(b, a)


def test_scope_cache_keys_and_participants():
    dm = ConversationScope.direct("bob", "alice")

    assert dm.scope_id == "alice:bob"
    assert dm.cache_key == "e2e_conv_key:dm:alice:bob"
    assert dm.participants() == ["alice", "bob"]
    assert ConversationScope("group", "g1") == ConversationScope.group("g1")
    assert ConversationScope.channel("c1").kind is ScopeKind.CHANNEL
    assert ConversationScope.channel("c1").participants() == []
    with pytest.raises(ValueError):
        ConversationScope("dm", "")


@pytest.mark.parametrize("content,expected", [
    ("hi", False),
    ("hello there, how are you doing today?", False),
    ("short+/=", False),
    ("q83vEjRWeJCrze8SNFZ4kKvN7xI0VniQ", True),
    ("dGhpcyBpcyBhIHRlc3Qgb2YgYmFzZTY0IGVuY29kaW5n==", True),
    ("supercalifragilisticexpialidocious", True),
    ("https://example.com/some/long/path", False),
])
def test_ciphertext_shape_heuristic(content, expected):
    assert looks_encrypted(content) is expected

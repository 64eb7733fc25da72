"""
Tests for message and file encryption, legacy migration and rendering.
"""

import pytest

from sealchat.crypto import PLACEHOLDER, ConversationScope, MessageCipher, StoredMessage
from sealchat.crypto.primitives import encode_base64


DM = ConversationScope.direct("alice", "bob")


@pytest.fixture
async def pair(make_device):
    alice = make_device("alice")
    bob = make_device("bob")
    await alice.identity.ensure_identity()
    await bob.identity.ensure_identity()
    return alice, bob


async def test_message_between_two_users(pair):
    alice, bob = pair

    payload = await alice.cipher.encrypt_message(DM, ["bob"], "hello")
    wire = payload.to_dict()

    # Bob has never seen the scope, so the key comes from his envelope first
    await bob.broker.ensure_conversation_key(DM, ["alice"])
    assert await bob.cipher.decrypt_message(DM, wire['ciphertext'], wire['nonce']) == "hello"
    assert await bob.cipher.decrypt_message(DM, payload.ciphertext, payload.nonce) == "hello"


async def test_decrypt_without_cached_key_returns_none(pair, server):
    alice, bob = pair
    payload = await alice.cipher.encrypt_message(DM, ["bob"], "hi")
    calls = dict(server.calls)

    assert await bob.cipher.decrypt_message(DM, payload.ciphertext, payload.nonce) is None
    assert dict(server.calls) == calls

    message = StoredMessage("1", encode_base64(payload.ciphertext), encode_base64(payload.nonce), True)
    assert await bob.cipher.render_message(DM, ["alice"], message) == PLACEHOLDER


async def test_undecryptable_messages_return_none(pair):
    alice, _ = pair
    payload = await alice.cipher.encrypt_message(DM, ["bob"], "hi")
    tampered = bytes([payload.ciphertext[0] ^ 1]) + payload.ciphertext[1:]

    assert await alice.cipher.decrypt_message(DM, tampered, payload.nonce) is None
    assert await alice.cipher.decrypt_message(DM, "not base64!", payload.nonce) is None
    assert await alice.cipher.decrypt_message(DM, payload.ciphertext, b"short") is None
    assert await alice.cipher.decrypt_message(ConversationScope.group("other"), payload.ciphertext,
                                              payload.nonce) is None


async def test_non_utf8_plaintext_returns_none(pair):
    alice, _ = pair
    key = await alice.broker.ensure_conversation_key(DM, ["bob"])
    payload = alice.crypto.encrypt(key, b"\xff\xfe\xfd")

    assert await alice.cipher.decrypt_message(DM, payload.ciphertext, payload.nonce) is None


async def test_file_round_trip(pair, server):
    alice, bob = pair
    data = bytes(range(256)) * 64

    payload = await alice.cipher.encrypt_file(DM, ["bob"], data)
    server.files["file-1"] = payload.ciphertext
    await bob.broker.ensure_conversation_key(DM, ["alice"])

    assert data not in payload.ciphertext
    assert await bob.cipher.decrypt_file(DM, "file-1", encode_base64(payload.nonce)) == data


async def test_file_fetch_failure_returns_none(pair):
    alice, _ = pair
    payload = await alice.cipher.encrypt_file(DM, ["bob"], b"data")

    assert await alice.cipher.decrypt_file(DM, "missing", payload.nonce) is None


async def test_legacy_message_is_migrated(pair, server):
    alice, bob = pair
    server.messages["7"] = StoredMessage("7", "hello from before encryption")

    text = await alice.cipher.render_message(DM, ["bob"], server.messages["7"])

    migrated = server.messages["7"]
    assert text == "hello from before encryption"
    assert migrated.is_encrypted
    assert migrated.content != "hello from before encryption"
    assert migrated.nonce

    await bob.broker.ensure_conversation_key(DM, ["alice"])
    assert await bob.cipher.render_message(DM, ["alice"], migrated) == "hello from before encryption"


async def test_migration_skips_messages_that_need_none(pair, server):
    alice, _ = pair
    messages = [
        StoredMessage("1", "already", nonce="bm9uY2U=", is_encrypted=True),
        StoredMessage("2", "has a nonce", nonce="bm9uY2U="),
        StoredMessage("3", ""),
        StoredMessage("4", "q83vEjRWeJCrze8SNFZ4kKvN7xI0VniQ"),
    ]

    for message in messages:
        assert await alice.cipher.migrate_legacy_message(DM, ["bob"], message) is None
    assert server.calls['mark_encrypted'] == 0


async def test_ciphertext_shaped_content_renders_placeholder(pair, server):
    alice, _ = pair
    message = StoredMessage("9", "q83vEjRWeJCrze8SNFZ4kKvN7xI0VniQ")

    assert await alice.cipher.render_message(DM, ["bob"], message) == PLACEHOLDER
    assert server.calls['mark_encrypted'] == 0


async def test_migration_failure_is_best_effort(pair, server):
    alice, _ = pair
    server.messages["3"] = StoredMessage("3", "plain words")
    server.envelopes_down = True

    assert await alice.cipher.render_message(DM, ["bob"], server.messages["3"]) == "plain words"
    assert not server.messages["3"].is_encrypted
    assert server.messages["3"].content == "plain words"


async def test_render_without_recipients_leaves_plaintext(pair, server):
    alice, _ = pair
    message = StoredMessage("5", "left alone")

    assert await alice.cipher.render_message(ConversationScope.channel("general"), [], message) == "left alone"
    assert server.calls['mark_encrypted'] == 0
    assert server.calls['save_envelopes'] == 0


async def test_flagged_message_without_nonce_renders_placeholder(pair):
    alice, _ = pair
    message = StoredMessage("6", "whatever", is_encrypted=True)

    assert await alice.cipher.render_message(DM, ["bob"], message) == PLACEHOLDER


async def test_third_device_without_envelope_sees_placeholder(pair, make_device, server):
    alice, bob = pair
    carol = make_device("carol")
    await carol.identity.ensure_identity()
    team = ConversationScope.group("team")

    payload = await alice.cipher.encrypt_message(team, ["bob"], "members only")
    wire = payload.to_dict()

    assert (team, (await carol.identity.ensure_identity()).device_id) not in server.envelopes
    assert await carol.cipher.decrypt_message(team, wire['ciphertext'], wire['nonce']) is None
    message = StoredMessage("11", wire['ciphertext'], wire['nonce'], True, "alice")
    assert await carol.cipher.render_message(team, ["alice", "bob"], message) == PLACEHOLDER


async def test_group_legacy_message_reads_back_after_migration(pair, server):
    alice, bob = pair
    team = ConversationScope.group("team")
    await alice.broker.ensure_conversation_key(team, ["alice", "bob"])
    server.messages["12"] = StoredMessage("12", "hi")

    assert await alice.cipher.render_message(team, ["alice", "bob"], server.messages["12"]) == "hi"

    migrated = server.messages["12"]
    assert migrated.is_encrypted and migrated.nonce and migrated.content != "hi"
    assert await alice.cipher.decrypt_message(team, migrated.content, migrated.nonce) == "hi"
    assert await alice.cipher.render_message(team, ["alice", "bob"], migrated) == "hi"


async def test_read_paths_without_transport_do_not_raise(pair):
    alice, _ = pair
    cipher = MessageCipher(alice.broker, alice.crypto)
    payload = await cipher.encrypt_message(DM, ["bob"], "no transport")

    assert await cipher.decrypt_file(DM, "file-1", payload.nonce) is None
    assert await cipher.migrate_legacy_message(DM, ["bob"], StoredMessage("1", "plain")) is None
    assert await cipher.render_message(DM, ["bob"], StoredMessage("1", "plain")) == "plain"

#!/usr/bin/env python3
"""
CLI Client for End-to-End Encrypted Chat

Provides a command-line interface for:
- User registration and login
- Per-device identity registration
- Direct, group and channel conversations sharing one sealed key each
- Encrypted messages and files, with migration of legacy plaintext
"""

import argparse
import asyncio
import getpass
import json
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException
from prompt_toolkit import PromptSession
from prompt_toolkit.patch_stdout import patch_stdout

from sealchat.crypto import (
    ConversationKeyBroker,
    ConversationScope,
    CryptoContext,
    DeviceIdentityManager,
    E2EError,
    MessageCipher,
    PLACEHOLDER,
    ScopeKind,
)
from sealchat.client.api import ServerAPI, to_stored_message
from sealchat.client.storage import EncryptedStorage


logger = logging.getLogger(__name__)

HELP_TEXT = """Commands:
  /dm <username>                 - Chat with a user
  /group <id> [members...]       - Create or open a group
  /channel <id> [members...]     - Create or open a channel
  /invite <username...>          - Add members to the current group/channel
  /share                         - Seal the current key for members' new devices
  /rotate                        - Replace the current conversation key
  /history                       - Show recent messages
  /sendfile <path>               - Send an encrypted file
  /getfile <message id> <path>   - Download and decrypt a file
  /users                         - List all users
  /exit                          - Leave current chat
  /quit                          - Quit application"""


class ChatClient:
    """
    End-to-end encrypted chat client for one device.
    """

    def __init__(self, server_url: str = "http://localhost:8000", data_dir: str = "client_data"):
        """
        Initialize chat client.

        Args:
            server_url: Base URL of the chat server
            data_dir: Directory for this device's encrypted storage
        """
        self.api = ServerAPI(server_url)
        self.data_dir = data_dir
        self.crypto = CryptoContext()
        self.storage: Optional[EncryptedStorage] = None
        self.identity: Optional[DeviceIdentityManager] = None
        self.broker: Optional[ConversationKeyBroker] = None
        self.cipher: Optional[MessageCipher] = None
        self.websocket = None
        self.running = False
        self.current_scope: Optional[ConversationScope] = None
        self.current_members: List[str] = []

    @property
    def username(self) -> Optional[str]:
        return self.api.username

    async def register(self, username: str, password: str) -> bool:
        """Register a new account and set up this device"""
        try:
            await self.api.register(username, password)
        except E2EError as e:
            print(f"Registration failed: {e}")
            return False
        print(f"Registration successful! Welcome, {username}")
        return await self._open_device(password)

    async def login(self, username: str, password: str) -> bool:
        """Login with existing account and set up this device"""
        try:
            await self.api.login(username, password)
        except E2EError as e:
            print(f"Login failed: {e}")
            return False
        print(f"Login successful! Welcome back, {username}")
        return await self._open_device(password)

    async def _open_device(self, password: str) -> bool:
        self.storage = EncryptedStorage(self.api.username, self.data_dir)
        try:
            if not self.storage.unlock(password):
                print("Failed to unlock storage with this password")
                return False
        except E2EError as e:
            print(f"Local storage unavailable: {e}")
            return False

        self.identity = DeviceIdentityManager(self.storage, self.api, self.crypto)
        self.broker = ConversationKeyBroker(self.identity, self.storage, self.api, self.api, self.crypto)
        self.cipher = MessageCipher(self.broker, self.crypto, self.api)

        try:
            identity = await self.identity.ensure_identity()
        except E2EError as e:
            print(f"Device identity unavailable: {e}")
            return False
        state = "registered" if self.identity.registered else "not yet registered"
        print(f"Device {identity.device_id} ({state})")
        return True

    async def connect_websocket(self) -> bool:
        """Connect to the server's event stream"""
        try:
            self.websocket = await websockets.connect(self.api.ws_url)
            await self.websocket.send(json.dumps({"type": "auth", "token": self.api.token}))
            data = json.loads(await self.websocket.recv())
        except (OSError, WebSocketException) as e:
            print(f"WebSocket connection error: {e}")
            return False

        if data.get("type") != "auth_success":
            print("Authentication failed")
            return False
        print("Connected to server")
        return True

    async def open_scope(self, scope: ConversationScope, members: Optional[List[str]] = None):
        """Make a scope current, creating group/channel scopes on the server"""
        try:
            if scope.kind is ScopeKind.DIRECT_MESSAGE:
                self.current_members = scope.participants()
            else:
                self.current_members = await self.api.create_scope(scope, members or [])
        except E2EError as e:
            print(f"Cannot open {scope}: {e}")
            return

        self.current_scope = scope
        try:
            await self.broker.ensure_conversation_key(scope, self.current_members)
        except E2EError as e:
            print(f"[Sending disabled: {e}]")
        await self.show_history()
        print(f"Chatting in {scope}. Type '/exit' to leave chat, '/help' for commands.")

    async def show_history(self, limit: int = 20):
        """Print recent messages of the current scope, decrypting as we go"""
        scope = self.current_scope
        try:
            records = await self.api.list_messages(scope, limit)
        except E2EError as e:
            print(f"Failed to load history: {e}")
            return
        if not records:
            return

        print("\n--- Message History ---")
        for record in records:
            await self._print_message(scope, record)
        print("--- End History ---\n")

    async def _print_message(self, scope: ConversationScope, record: dict):
        text = await self.cipher.render_message(scope, self.current_members, to_stored_message(record))
        sender = "You" if record.get("senderId") == self.username else record.get("senderId")
        timestamp = (record.get("createdAt") or "")[11:16]
        attachment = f" [file #{record['id']}]" if record.get("mediaId") else ""
        print(f"[{timestamp}] {sender}: {text}{attachment}")

    async def send_message(self, text: str):
        """Encrypt and send a message to the current scope"""
        try:
            payload = await self.cipher.encrypt_message(self.current_scope, self.current_members, text)
            await self.api.send_message(self.current_scope, payload)
        except E2EError as e:
            print(f"Failed to send message: {e}")

    async def send_file(self, path: str):
        """Encrypt a file, upload it and post a message referencing it"""
        try:
            data = Path(path).read_bytes()
        except OSError as e:
            print(f"Cannot read {path}: {e}")
            return

        name = os.path.basename(path)
        try:
            payload = await self.cipher.encrypt_file(self.current_scope, self.current_members, data)
            upload = await self.api.upload_file(self.current_scope, payload, name)
            caption = await self.cipher.encrypt_message(self.current_scope, self.current_members, name)
            await self.api.send_message(self.current_scope, caption, upload["id"], upload["nonce"])
        except E2EError as e:
            print(f"Failed to send file: {e}")
            return
        print(f"Sent {name} ({len(data)} bytes)")

    async def get_file(self, message_id: str, destination: str):
        """Download and decrypt the file attached to a message"""
        try:
            records = await self.api.list_messages(self.current_scope, 500)
        except E2EError as e:
            print(f"Failed to load messages: {e}")
            return

        record = next((r for r in records if str(r["id"]) == message_id and r.get("mediaId")), None)
        if record is None:
            print("No file attached to that message")
            return

        data = await self.cipher.decrypt_file(self.current_scope, str(record["mediaId"]), record["mediaNonce"])
        if data is None:
            print(PLACEHOLDER)
            return
        Path(destination).write_bytes(data)
        print(f"Saved {len(data)} bytes to {destination}")

    async def receive_messages(self):
        """Background task to receive message events"""
        try:
            while self.running:
                frame = await self.websocket.recv()
                try:
                    await self._handle_event(json.loads(frame))
                except (ValueError, KeyError, TypeError, AttributeError) as e:
                    logger.warning("Ignoring malformed event: %s", e)

        except ConnectionClosed:
            print("\nConnection closed")
            self.running = False

    async def _handle_event(self, data: dict):
        if data.get("type") != "message":
            return
        record = data["message"]
        if record.get("senderId") == self.username:
            return

        scope = ConversationScope(record["scope"], record["scopeId"])
        if scope == self.current_scope:
            print()
            await self._print_message(scope, record)
        else:
            print(f"\n[New message in {scope} from {record.get('senderId')}]")

    async def run_interactive(self):
        """Run interactive chat session"""
        self.running = True
        receive_task = asyncio.create_task(self.receive_messages())
        session = PromptSession()
        print(HELP_TEXT)

        try:
            while self.running:
                prompt_text = f"[{self.current_scope}] > " if self.current_scope else "> "
                try:
                    with patch_stdout():
                        user_input = await session.prompt_async(prompt_text)
                except (KeyboardInterrupt, EOFError):
                    break

                if not user_input:
                    continue
                if user_input.startswith("/"):
                    await self._handle_command(user_input)
                elif self.current_scope:
                    await self.send_message(user_input)
                else:
                    print("No active chat. Use /dm <username> to start.")

        finally:
            self.running = False
            receive_task.cancel()
            if self.websocket:
                await self.websocket.close()
            await self.api.aclose()
            if self.storage:
                self.storage.close()

    async def _handle_command(self, command: str):
        """Handle slash commands"""
        parts = command.split()
        cmd, args = parts[0].lower(), parts[1:]
        in_chat = self.current_scope is not None

        if cmd == "/dm" and len(args) == 1:
            await self.open_scope(ConversationScope.direct(self.username, args[0]))
        elif cmd in ("/group", "/channel") and args:
            kind = ScopeKind.GROUP if cmd == "/group" else ScopeKind.CHANNEL
            await self.open_scope(ConversationScope(kind, args[0]), args[1:])
        elif cmd == "/invite" and args and in_chat:
            await self._invite(args)
        elif cmd == "/share" and in_chat:
            await self._share()
        elif cmd == "/rotate" and in_chat:
            try:
                await self.broker.rotate_conversation_key(self.current_scope, self.current_members)
                print("Conversation key rotated; older messages stay readable only on devices that cached the old key")
            except E2EError as e:
                print(f"Rotation failed: {e}")
        elif cmd == "/history" and in_chat:
            await self.show_history()
        elif cmd == "/sendfile" and len(args) == 1 and in_chat:
            await self.send_file(args[0])
        elif cmd == "/getfile" and len(args) == 2 and in_chat:
            await self.get_file(args[0], args[1])
        elif cmd == "/users":
            try:
                print("Registered users:")
                for user in await self.api.list_users():
                    print(f"  - {user}")
            except E2EError as e:
                print(f"Failed to list users: {e}")
        elif cmd == "/exit":
            self.current_scope = None
            self.current_members = []
            print("Exited chat")
        elif cmd == "/quit":
            self.running = False
        elif cmd == "/help":
            print(HELP_TEXT)
        else:
            print("Unknown command. Type /help for help.")

    async def _invite(self, users: List[str]):
        if self.current_scope.kind is ScopeKind.DIRECT_MESSAGE:
            print("Direct messages cannot take more members")
            return
        try:
            self.current_members = await self.api.create_scope(self.current_scope, users)
        except E2EError as e:
            print(f"Invite failed: {e}")
            return
        await self._share()

    async def _share(self):
        try:
            count = await self.broker.share_conversation_key(self.current_scope, self.current_members)
            print(f"Key sealed for {count} devices")
        except E2EError as e:
            print(f"Sharing failed: {e}")


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="End-to-end encrypted chat client")
    parser.add_argument("--server", default=os.environ.get("SEALCHAT_SERVER", "http://localhost:8000"))
    parser.add_argument("--data-dir", default="client_data", help="directory for encrypted device storage")
    parser.add_argument("--verbose", action="store_true", help="log protocol events")
    return parser.parse_args(argv)


async def main(argv=None):
    """Main entry point"""
    args = parse_args(argv)
    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING)
    client = ChatClient(args.server, args.data_dir)

    print("=" * 50)
    print("End-to-End Encrypted Chat Client")
    print("=" * 50)
    print()

    while True:
        print("1. Register")
        print("2. Login")
        print("3. Quit")
        choice = input("Choose an option: ").strip()

        if choice in ("1", "2"):
            username = input("Username: ").strip()
            password = getpass.getpass("Password: ")
            action = client.register if choice == "1" else client.login
            if await action(username, password):
                break
        elif choice == "3":
            await client.api.aclose()
            return
        else:
            print("Invalid choice")

    if await client.connect_websocket():
        await client.run_interactive()

    print("\nGoodbye!")


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nInterrupted")
        sys.exit(0)


if __name__ == "__main__":
    run()

"""
HTTP adapters between a device and the SealChat server.

ServerAPI implements the device key directory, key envelope store and message
transport interfaces the crypto core consumes, plus the account and messaging
calls the client needs.
"""

import logging
from typing import List, Optional, Sequence

import httpx

from sealchat.crypto.errors import DirectoryError, EnvelopeConflict, TransportError
from sealchat.crypto.interfaces import DevicePublicKeyRecord, KeyEnvelope, StoredMessage
from sealchat.crypto.primitives import EncryptedPayload, decode_base64, encode_base64
from sealchat.crypto.scope import ConversationScope


logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0


def to_stored_message(data: dict) -> StoredMessage:
    """Convert a server message record for the cipher's read path"""
    return StoredMessage(
        message_id=str(data['id']),
        content=data.get('content') or "",
        nonce=data.get('contentNonce'),
        is_encrypted=bool(data.get('isEncrypted')),
        sender_id=data.get('senderId'),
    )


class ServerAPI:
    """
    Authenticated HTTP client for one device.

    Args:
        server_url: Base URL of the chat server
        http_client: Preconfigured client (tests pass one bound to the ASGI app)
        timeout: Per-request timeout in seconds
    """

    def __init__(
        self,
        server_url: str = "http://localhost:8000",
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.server_url = server_url.rstrip("/")
        self.http_client = http_client or httpx.AsyncClient(base_url=self.server_url, timeout=timeout)
        self.token: Optional[str] = None
        self.username: Optional[str] = None

    @property
    def ws_url(self) -> str:
        return self.server_url.replace("http", "ws", 1) + "/ws"

    async def aclose(self):
        await self.http_client.aclose()

    async def _request(self, method: str, path: str, error_cls=TransportError, **kwargs) -> httpx.Response:
        headers = kwargs.pop("headers", {})
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        try:
            response = await self.http_client.request(method, path, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            raise error_cls(f"{method} {path} failed: {e}") from e

        if response.status_code == 409 and error_cls is DirectoryError:
            raise EnvelopeConflict(self._detail(response))
        if response.is_error:
            raise error_cls(f"{method} {path} returned {response.status_code}: {self._detail(response)}")
        return response

    @staticmethod
    def _detail(response: httpx.Response) -> str:
        try:
            return str(response.json().get("detail", response.text))
        except ValueError:
            return response.text

    # Accounts

    async def register(self, username: str, password: str) -> str:
        """Create an account and keep its token"""
        return await self._authenticate("/api/register", username, password)

    async def login(self, username: str, password: str) -> str:
        """Log into an existing account and keep its token"""
        return await self._authenticate("/api/login", username, password)

    async def _authenticate(self, path: str, username: str, password: str) -> str:
        response = await self._request("POST", path, json={"username": username, "password": password})
        data = response.json()
        self.token = data["access_token"]
        self.username = data["username"]
        return self.token

    async def list_users(self) -> List[str]:
        response = await self._request("GET", "/api/users")
        return response.json()["users"]

    # Device key directory

    async def fetch_device_keys(self, user_ids: Sequence[str]) -> List[DevicePublicKeyRecord]:
        """Public keys of every device of the given users, in one request"""
        if not user_ids:
            return []
        response = await self._request(
            "GET", "/api/keys/device", DirectoryError, params={"userIds": ",".join(user_ids)}
        )
        records = []
        for item in response.json().get("keys", []):
            try:
                records.append(DevicePublicKeyRecord.from_dict(item))
            except (KeyError, ValueError) as e:
                logger.warning("Ignoring malformed device key record: %s", e)
        return records

    async def register_device_key(self, device_id: str, public_key: bytes):
        await self._request(
            "POST", "/api/keys/device", DirectoryError,
            json={"deviceId": device_id, "publicKey": encode_base64(public_key)},
        )

    # Key envelope store

    async def fetch_envelope(self, scope: ConversationScope, device_id: str) -> Optional[bytes]:
        response = await self._request(
            "GET", "/api/keys/conversation", DirectoryError,
            params={"scope": scope.kind.value, "scopeId": scope.scope_id, "deviceId": device_id},
        )
        encrypted_key = response.json().get("encryptedKey")
        if not encrypted_key:
            return None
        try:
            return decode_base64(encrypted_key)
        except ValueError:
            logger.warning("Envelope for %s is not valid base64", scope)
            return None

    async def save_envelopes(
        self,
        scope: ConversationScope,
        entries: Sequence[KeyEnvelope],
        if_absent: bool = False,
    ):
        """
        Store sealed keys for one scope in one request.

        Raises:
            EnvelopeConflict: If if_absent is set and the scope already has envelopes
            DirectoryError: On any other failure
        """
        await self._request(
            "POST", "/api/keys/conversation", DirectoryError,
            json={
                "scope": scope.kind.value,
                "scopeId": scope.scope_id,
                "entries": [entry.to_dict() for entry in entries],
                "ifAbsent": if_absent,
            },
        )

    # Scopes

    async def create_scope(self, scope: ConversationScope, members: Sequence[str]) -> List[str]:
        response = await self._request(
            "POST", "/api/scopes",
            json={"scope": scope.kind.value, "scopeId": scope.scope_id, "members": list(members)},
        )
        return response.json()["members"]

    async def list_scope_members(self, scope: ConversationScope) -> List[str]:
        response = await self._request("GET", f"/api/scopes/{scope.kind.value}/{scope.scope_id}/members")
        return response.json()["members"]

    # Message transport

    async def send_message(
        self,
        scope: ConversationScope,
        payload: EncryptedPayload,
        media_id: Optional[int] = None,
        media_nonce: Optional[str] = None,
    ) -> dict:
        """Send an encrypted message"""
        wire = payload.to_dict()
        response = await self._request(
            "POST", "/api/messages",
            json={
                "scope": scope.kind.value,
                "scopeId": scope.scope_id,
                "content": wire["ciphertext"],
                "contentNonce": wire["nonce"],
                "isEncrypted": True,
                "mediaId": media_id,
                "mediaNonce": media_nonce,
            },
        )
        return response.json()["message"]

    async def send_plaintext(self, scope: ConversationScope, content: str) -> dict:
        """Send an unencrypted message, as clients predating encryption did"""
        response = await self._request(
            "POST", "/api/messages",
            json={"scope": scope.kind.value, "scopeId": scope.scope_id, "content": content},
        )
        return response.json()["message"]

    async def list_messages(self, scope: ConversationScope, limit: int = 50) -> List[dict]:
        response = await self._request(
            "GET", "/api/messages",
            params={"scope": scope.kind.value, "scopeId": scope.scope_id, "limit": limit},
        )
        return response.json()["messages"]

    async def mark_encrypted(self, scope: ConversationScope, message_id: str, payload: EncryptedPayload):
        """Write a migrated message's ciphertext back to the server"""
        try:
            server_id = int(message_id)
        except ValueError as e:
            raise TransportError(f"Message id {message_id!r} is not a server id") from e
        wire = payload.to_dict()
        await self._request(
            "POST", "/api/messages/encrypt",
            json={"id": server_id, "content": wire["ciphertext"], "contentNonce": wire["nonce"]},
        )

    async def upload_file(self, scope: ConversationScope, payload: EncryptedPayload, filename: str) -> dict:
        """Upload an encrypted file as an opaque blob"""
        response = await self._request(
            "POST", "/api/files",
            params={
                "scope": scope.kind.value,
                "scopeId": scope.scope_id,
                "nonce": encode_base64(payload.nonce),
                "filename": filename,
            },
            content=payload.ciphertext,
            headers={"Content-Type": "application/octet-stream"},
        )
        return response.json()

    async def fetch_file(self, location: str) -> bytes:
        """Download a file's ciphertext by id or URL path"""
        path = location if location.startswith("/") else f"/api/files/{location}"
        response = await self._request("GET", path)
        return response.content

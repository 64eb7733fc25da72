"""
FastAPI server for end-to-end encrypted chat.

This server:
- Handles user registration and authentication
- Hosts the device key directory (public keys only)
- Hosts the key envelope store (sealed conversation keys only)
- Stores and relays encrypted messages and files, pushing new-message events
  to connected devices over WebSocket
"""

import logging
from contextlib import asynccontextmanager
from typing import Dict, List, Optional, Set

from fastapi import (
    Depends,
    FastAPI,
    HTTPException,
    Query,
    Request,
    Response,
    WebSocket,
    WebSocketDisconnect,
)
from pydantic import BaseModel, ConfigDict, Field

from sealchat.crypto.scope import ConversationScope, ScopeKind

from .auth import Token, create_access_token, current_user, verify_token
from .config import Settings, get_settings
from .database import Database, EnvelopeConflictError


logger = logging.getLogger(__name__)


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class UserCredentials(BaseModel):
    username: str = Field(min_length=1, max_length=50, pattern=r"^[^:,\s]+$")
    password: str = Field(min_length=1)


class DeviceKeyUpload(CamelModel):
    device_id: str = Field(alias="deviceId", min_length=1, max_length=64)
    public_key: str = Field(alias="publicKey", min_length=1, max_length=64)


class EnvelopeEntry(CamelModel):
    device_id: str = Field(alias="deviceId", min_length=1, max_length=64)
    encrypted_key: str = Field(alias="encryptedKey", min_length=1)


class EnvelopeBatch(CamelModel):
    scope: ScopeKind
    scope_id: str = Field(alias="scopeId", min_length=1)
    entries: List[EnvelopeEntry] = Field(min_length=1)
    if_absent: bool = Field(default=False, alias="ifAbsent")


class ScopeCreate(CamelModel):
    scope: ScopeKind
    scope_id: str = Field(alias="scopeId", min_length=1)
    members: List[str] = Field(default_factory=list)


class MessageCreate(CamelModel):
    scope: ScopeKind
    scope_id: str = Field(alias="scopeId", min_length=1)
    content: str = Field(min_length=1)
    content_nonce: Optional[str] = Field(default=None, alias="contentNonce")
    is_encrypted: bool = Field(default=False, alias="isEncrypted")
    media_id: Optional[int] = Field(default=None, alias="mediaId")
    media_nonce: Optional[str] = Field(default=None, alias="mediaNonce")


class MessageEncrypt(CamelModel):
    id: int
    content: str = Field(min_length=1)
    content_nonce: str = Field(alias="contentNonce", min_length=1)


class ConnectionManager:
    """Manages active WebSocket connections, several per user (one per device)"""

    def __init__(self):
        self.active_connections: Dict[str, Set[WebSocket]] = {}

    def add(self, username: str, websocket: WebSocket):
        self.active_connections.setdefault(username, set()).add(websocket)

    def disconnect(self, username: str, websocket: WebSocket):
        """Remove a WebSocket connection"""
        sockets = self.active_connections.get(username)
        if sockets is None:
            return
        sockets.discard(websocket)
        if not sockets:
            del self.active_connections[username]

    async def send_to_user(self, username: str, message: dict):
        """Send an event to every connected device of a user"""
        for websocket in list(self.active_connections.get(username, ())):
            try:
                await websocket.send_json(message)
            except (RuntimeError, WebSocketDisconnect) as e:
                logger.info("Dropping connection of %s: %s", username, e)
                self.disconnect(username, websocket)

    def is_online(self, username: str) -> bool:
        return username in self.active_connections

    def get_online_users(self) -> List[str]:
        return sorted(self.active_connections)


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_manager(request: Request) -> ConnectionManager:
    return request.app.state.manager


async def scope_participants(db: Database, scope: ConversationScope) -> List[str]:
    """Users allowed to read and write a scope"""
    if scope.kind is ScopeKind.DIRECT_MESSAGE:
        return scope.participants()
    return await db.list_scope_members(scope.kind.value, scope.scope_id)


async def require_scope_access(db: Database, scope: ConversationScope, user_id: str) -> List[str]:
    participants = await scope_participants(db, scope)
    if user_id not in participants:
        if scope.kind is ScopeKind.DIRECT_MESSAGE:
            raise HTTPException(status_code=403, detail="Not authorized for this DM")
        raise HTTPException(status_code=403, detail=f"Not a member of this {scope.kind.value}")
    return participants


def create_app(settings: Optional[Settings] = None, database: Optional[Database] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Server settings, read from the environment when omitted
        database: Database to use, built from settings.database_url when omitted
    """
    settings = settings or get_settings()
    db = database or Database(settings.database_url, echo=settings.sql_debug)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown events"""
        await db.create_tables()
        logger.info("Database initialized")
        yield
        await db.dispose()
        logger.info("Server shutting down")

    app = FastAPI(
        title=settings.app_name,
        description="Multi-device end-to-end encrypted chat with sealed conversation keys",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.db = db
    app.state.manager = ConnectionManager()
    app.dependency_overrides[get_settings] = lambda: settings

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    @app.post("/api/register", response_model=Token)
    async def register(user_data: UserCredentials, db: Database = Depends(get_db)):
        """Register a new user account"""
        user = await db.create_user(username=user_data.username, password=user_data.password)
        if not user:
            raise HTTPException(status_code=400, detail="Username already exists")

        access_token = create_access_token(data={"sub": user.username}, settings=settings)
        return Token(access_token=access_token, token_type="bearer", username=user.username)

    @app.post("/api/login", response_model=Token)
    async def login(user_data: UserCredentials, db: Database = Depends(get_db)):
        """Authenticate a user and return JWT token"""
        user = await db.authenticate_user(user_data.username, user_data.password)
        if not user:
            raise HTTPException(status_code=401, detail="Invalid username or password")

        access_token = create_access_token(data={"sub": user.username}, settings=settings)
        return Token(access_token=access_token, token_type="bearer", username=user.username)

    @app.get("/api/users")
    async def list_users(user_id: str = Depends(current_user), db: Database = Depends(get_db)):
        """List all registered users"""
        return {"users": await db.list_users()}

    @app.get("/api/keys/device")
    async def get_device_keys(
        user_ids: Optional[str] = Query(default=None, alias="userIds"),
        user_id: str = Depends(current_user),
        db: Database = Depends(get_db),
    ):
        """Public keys of every device of the listed users (comma separated)"""
        ids = [part for part in (user_ids or "").split(",") if part]
        return {"keys": await db.get_device_keys(ids)}

    @app.post("/api/keys/device")
    async def register_device_key(
        upload: DeviceKeyUpload,
        user_id: str = Depends(current_user),
        db: Database = Depends(get_db),
    ):
        """Upsert the calling device's public key under the authenticated user"""
        await db.upsert_device_key(user_id, upload.device_id, upload.public_key)
        return {"success": True}

    @app.get("/api/keys/conversation")
    async def get_conversation_key(
        scope: ScopeKind,
        scope_id: str = Query(alias="scopeId", min_length=1),
        device_id: str = Query(alias="deviceId", min_length=1),
        user_id: str = Depends(current_user),
        db: Database = Depends(get_db),
    ):
        """Sealed key of one of the caller's own devices"""
        encrypted_key = await db.get_envelope(scope.value, scope_id, device_id, user_id)
        return {"encryptedKey": encrypted_key}

    @app.post("/api/keys/conversation")
    async def save_conversation_keys(
        batch: EnvelopeBatch,
        user_id: str = Depends(current_user),
        db: Database = Depends(get_db),
    ):
        """Batched upsert of sealed keys for one scope"""
        scope = ConversationScope(batch.scope, batch.scope_id)
        await require_scope_access(db, scope, user_id)

        entries = [{'deviceId': e.device_id, 'encryptedKey': e.encrypted_key} for e in batch.entries]
        try:
            written = await db.save_envelopes(scope.kind.value, scope.scope_id, entries, batch.if_absent)
        except EnvelopeConflictError:
            raise HTTPException(status_code=409, detail="Scope already has a conversation key")
        return {"success": True, "written": written}

    @app.post("/api/scopes")
    async def create_scope(
        body: ScopeCreate,
        user_id: str = Depends(current_user),
        db: Database = Depends(get_db),
    ):
        """Create a group or channel scope, or add members to one the caller belongs to"""
        if body.scope is ScopeKind.DIRECT_MESSAGE:
            raise HTTPException(status_code=400, detail="Direct message scopes have fixed members")

        members = await db.list_scope_members(body.scope.value, body.scope_id)
        if members and user_id not in members:
            raise HTTPException(status_code=403, detail=f"Not a member of this {body.scope.value}")

        members = await db.add_scope_members(body.scope.value, body.scope_id, [user_id, *body.members])
        return {"members": members}

    @app.get("/api/scopes/{scope}/{scope_id}/members")
    async def list_scope_members(
        scope: ScopeKind,
        scope_id: str,
        user_id: str = Depends(current_user),
        db: Database = Depends(get_db),
    ):
        participants = await require_scope_access(db, ConversationScope(scope, scope_id), user_id)
        return {"members": participants}

    @app.post("/api/messages")
    async def send_message(
        body: MessageCreate,
        user_id: str = Depends(current_user),
        db: Database = Depends(get_db),
        manager: ConnectionManager = Depends(get_manager),
    ):
        """Store a message and notify the scope's connected participants"""
        scope = ConversationScope(body.scope, body.scope_id)
        participants = await require_scope_access(db, scope, user_id)
        if body.is_encrypted and not body.content_nonce:
            raise HTTPException(status_code=400, detail="Encrypted messages need a nonce")

        message = await db.create_message(
            scope=scope.kind.value,
            scope_id=scope.scope_id,
            sender_id=user_id,
            content=body.content,
            content_nonce=body.content_nonce,
            is_encrypted=body.is_encrypted,
            media_id=body.media_id,
            media_nonce=body.media_nonce,
        )
        event = {"type": "message", "message": message.to_dict()}
        for participant in participants:
            await manager.send_to_user(participant, event)
        return {"message": message.to_dict()}

    @app.get("/api/messages")
    async def list_messages(
        scope: ScopeKind,
        scope_id: str = Query(alias="scopeId", min_length=1),
        limit: int = Query(default=50, ge=1, le=500),
        user_id: str = Depends(current_user),
        db: Database = Depends(get_db),
    ):
        await require_scope_access(db, ConversationScope(scope, scope_id), user_id)
        messages = await db.list_messages(scope.value, scope_id, limit)
        return {"messages": [m.to_dict() for m in messages]}

    @app.post("/api/messages/encrypt")
    async def encrypt_message(
        body: MessageEncrypt,
        user_id: str = Depends(current_user),
        db: Database = Depends(get_db),
    ):
        """Write back the ciphertext of a migrated legacy message"""
        message = await db.mark_message_encrypted(body.id, user_id, body.content, body.content_nonce)
        if message is None:
            raise HTTPException(status_code=404, detail="Message not found")
        return {"success": True}

    @app.post("/api/files")
    async def upload_file(
        request: Request,
        scope: ScopeKind,
        scope_id: str = Query(alias="scopeId", min_length=1),
        nonce: str = Query(min_length=1),
        filename: str = Query(default="file", max_length=255),
        user_id: str = Depends(current_user),
        db: Database = Depends(get_db),
    ):
        """Store an encrypted file sent as the raw request body"""
        await require_scope_access(db, ConversationScope(scope, scope_id), user_id)
        data = await request.body()
        if not data:
            raise HTTPException(status_code=400, detail="Empty file")
        if len(data) > settings.max_file_bytes:
            raise HTTPException(status_code=413, detail="File too large")

        blob = await db.store_file(scope.value, scope_id, user_id, filename, nonce, data)
        return {"id": blob.id, "url": f"/api/files/{blob.id}", "nonce": blob.nonce}

    @app.get("/api/files/{file_id}")
    async def download_file(
        file_id: int,
        user_id: str = Depends(current_user),
        db: Database = Depends(get_db),
    ):
        blob = await db.get_file(file_id)
        if blob is None:
            raise HTTPException(status_code=404, detail="File not found")
        await require_scope_access(db, ConversationScope(blob.scope, blob.scope_id), user_id)
        return Response(
            content=blob.data,
            media_type="application/octet-stream",
            headers={"X-Content-Nonce": blob.nonce},
        )

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """
        WebSocket endpoint for new-message events.

        Protocol:
        1. Client sends: {"type": "auth", "token": "jwt_token"}
        2. Server responds: {"type": "auth_success", "username": "..."}
        3. Server pushes: {"type": "message", "message": {...}}
        4. Client may send {"type": "ping"}, server answers {"type": "pong"}
        """
        manager: ConnectionManager = app.state.manager
        username = None
        await websocket.accept()

        try:
            auth_data = await websocket.receive_json()
            token = auth_data.get("token") if auth_data.get("type") == "auth" else None
            username = verify_token(token, settings) if token else None
            if not username:
                await websocket.send_json({"type": "error", "message": "Authentication required"})
                await websocket.close()
                return

            manager.add(username, websocket)
            await websocket.send_json({"type": "auth_success", "username": username})

            while True:
                data = await websocket.receive_json()
                if data.get("type") == "ping":
                    await websocket.send_json({"type": "pong"})

        except WebSocketDisconnect:
            pass
        except ValueError as e:
            logger.info("Closing WebSocket after malformed frame: %s", e)
            await websocket.close(code=1003)
        finally:
            if username:
                manager.disconnect(username, websocket)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=get_settings().log_level)
    uvicorn.run(app, host="0.0.0.0", port=8000)

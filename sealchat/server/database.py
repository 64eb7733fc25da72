"""
Database models and operations for the chat server.

Uses SQLAlchemy with SQLite for storing accounts, the device key directory, the
key envelope store, scope membership and encrypted messages/files.
Note: the server only ever stores public keys, sealed keys and ciphertext.
"""

from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
    select,
)
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from .auth import hash_password, verify_password


Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    """User account model"""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(50), unique=True, index=True, nullable=False)
    hashed_password = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    is_active = Column(Boolean, default=True)


class DeviceKey(Base):
    """Device key directory: one public key per (user, device)"""
    __tablename__ = "device_keys"
    __table_args__ = (UniqueConstraint("user_id", "device_id"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(50), index=True, nullable=False)
    device_id = Column(String(64), index=True, nullable=False)
    public_key = Column(String(64), nullable=False)  # base64 Curve25519 public key
    last_seen = Column(DateTime(timezone=True), default=utcnow)


class ConversationKey(Base):
    """Key envelope store: one sealed conversation key per (scope, device)"""
    __tablename__ = "conversation_keys"
    __table_args__ = (UniqueConstraint("scope", "scope_id", "device_id"),)

    id = Column(Integer, primary_key=True, index=True)
    scope = Column(String(16), nullable=False)
    scope_id = Column(String(255), index=True, nullable=False)
    user_id = Column(String(50), index=True, nullable=False)
    device_id = Column(String(64), nullable=False)
    encrypted_key = Column(Text, nullable=False)  # base64 sealed box
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class KeyedScope(Base):
    """Marks a scope as keyed; its unique row serializes conditional envelope writes"""
    __tablename__ = "keyed_scopes"
    __table_args__ = (UniqueConstraint("scope", "scope_id"),)

    id = Column(Integer, primary_key=True)
    scope = Column(String(16), nullable=False)
    scope_id = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class ScopeMember(Base):
    """Membership of group and channel scopes"""
    __tablename__ = "scope_members"
    __table_args__ = (UniqueConstraint("scope", "scope_id", "user_id"),)

    id = Column(Integer, primary_key=True, index=True)
    scope = Column(String(16), nullable=False)
    scope_id = Column(String(255), index=True, nullable=False)
    user_id = Column(String(50), nullable=False)


class Message(Base):
    """Stored message; content is ciphertext unless the row predates encryption"""
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, index=True)
    scope = Column(String(16), nullable=False)
    scope_id = Column(String(255), index=True, nullable=False)
    sender_id = Column(String(50), nullable=False)
    content = Column(Text, nullable=False)
    content_nonce = Column(String(64), nullable=True)
    is_encrypted = Column(Boolean, default=False, nullable=False)
    media_id = Column(Integer, nullable=True)
    media_nonce = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'scope': self.scope,
            'scopeId': self.scope_id,
            'senderId': self.sender_id,
            'content': self.content,
            'contentNonce': self.content_nonce,
            'isEncrypted': bool(self.is_encrypted),
            'mediaId': self.media_id,
            'mediaNonce': self.media_nonce,
            'createdAt': self.created_at.isoformat() if self.created_at else None,
        }


class FileBlob(Base):
    """Opaque encrypted file"""
    __tablename__ = "files"

    id = Column(Integer, primary_key=True, index=True)
    scope = Column(String(16), nullable=False)
    scope_id = Column(String(255), index=True, nullable=False)
    uploader_id = Column(String(50), nullable=False)
    filename = Column(String(255), nullable=False)
    nonce = Column(String(64), nullable=False)
    data = Column(LargeBinary, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class EnvelopeConflictError(Exception):
    """A conditional envelope write found envelopes already stored for the scope"""
    pass


class Database:
    """Database manager for async operations"""

    def __init__(self, database_url: str = "sqlite+aiosqlite:///./sealchat.db", echo: bool = False):
        """
        Initialize database connection.

        Args:
            database_url: SQLAlchemy database URL
            echo: Log emitted SQL
        """
        self.engine = create_async_engine(database_url, echo=echo)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def create_tables(self):
        """Create all tables"""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self):
        await self.engine.dispose()

    # Accounts

    async def create_user(self, username: str, password: str) -> Optional[User]:
        """
        Create a new user account.

        Returns:
            Created User object or None if username exists
        """
        async with self.async_session() as session:
            result = await session.execute(select(User).where(User.username == username))
            if result.scalar_one_or_none():
                return None

            user = User(username=username, hashed_password=hash_password(password))
            session.add(user)
            await session.commit()
            await session.refresh(user)
            return user

    async def get_user(self, username: str) -> Optional[User]:
        async with self.async_session() as session:
            result = await session.execute(select(User).where(User.username == username))
            return result.scalar_one_or_none()

    async def authenticate_user(self, username: str, password: str) -> Optional[User]:
        """
        Authenticate a user.

        Returns:
            User object if authenticated, None otherwise
        """
        user = await self.get_user(username)
        if not user or not verify_password(password, user.hashed_password):
            return None
        return user

    async def list_users(self) -> List[str]:
        async with self.async_session() as session:
            result = await session.execute(
                select(User.username).where(User.is_active.is_(True)).order_by(User.username)
            )
            return [row[0] for row in result.all()]

    # Device key directory

    async def upsert_device_key(self, user_id: str, device_id: str, public_key: str):
        """Store or refresh a device public key, bumping its last-seen marker"""
        statement = insert(DeviceKey).values(user_id=user_id, device_id=device_id, public_key=public_key)
        statement = statement.on_conflict_do_update(
            index_elements=["user_id", "device_id"],
            set_={"public_key": public_key, "last_seen": utcnow()},
        )
        async with self.async_session() as session:
            await session.execute(statement)
            await session.commit()

    async def get_device_keys(self, user_ids: Sequence[str]) -> List[dict]:
        """Get every registered device key of the given users"""
        if not user_ids:
            return []
        async with self.async_session() as session:
            result = await session.execute(
                select(DeviceKey)
                .where(DeviceKey.user_id.in_(list(user_ids)))
                .order_by(DeviceKey.user_id, DeviceKey.id)
            )
            return [
                {'userId': r.user_id, 'deviceId': r.device_id, 'publicKey': r.public_key}
                for r in result.scalars().all()
            ]

    # Key envelope store

    async def get_envelope(self, scope: str, scope_id: str, device_id: str, user_id: str) -> Optional[str]:
        """Get the sealed key stored for one of the caller's own devices"""
        async with self.async_session() as session:
            result = await session.execute(
                select(ConversationKey.encrypted_key).where(
                    ConversationKey.scope == scope,
                    ConversationKey.scope_id == scope_id,
                    ConversationKey.device_id == device_id,
                    ConversationKey.user_id == user_id,
                ).limit(1)
            )
            return result.scalar_one_or_none()

    async def save_envelopes(
        self,
        scope: str,
        scope_id: str,
        entries: Iterable[Dict[str, str]],
        if_absent: bool = False,
    ) -> int:
        """
        Upsert sealed keys for a scope in one transaction.

        Entries addressed to devices missing from the directory are skipped. The
        first statement claims the scope's keyed marker, so concurrent conditional
        writes are serialized by the database and only one of them can succeed.

        Returns:
            Number of envelopes written

        Raises:
            EnvelopeConflictError: If if_absent is set and the scope is already keyed
        """
        entries = list(entries)
        marker = insert(KeyedScope).values(scope=scope, scope_id=scope_id)
        if not if_absent:
            marker = marker.on_conflict_do_nothing(index_elements=["scope", "scope_id"])

        async with self.async_session() as session:
            try:
                await session.execute(marker)
            except IntegrityError:
                await session.rollback()
                raise EnvelopeConflictError(f"{scope}:{scope_id} already has envelopes")

            device_ids = [entry['deviceId'] for entry in entries]
            owners = await session.execute(
                select(DeviceKey.device_id, DeviceKey.user_id).where(DeviceKey.device_id.in_(device_ids))
            )
            user_by_device = {device_id: user_id for device_id, user_id in owners.all()}

            written = 0
            for entry in entries:
                target_user = user_by_device.get(entry['deviceId'])
                if target_user is None:
                    continue

                now = utcnow()
                statement = insert(ConversationKey).values(
                    scope=scope,
                    scope_id=scope_id,
                    user_id=target_user,
                    device_id=entry['deviceId'],
                    encrypted_key=entry['encryptedKey'],
                    updated_at=now,
                ).on_conflict_do_update(
                    index_elements=["scope", "scope_id", "device_id"],
                    set_={"encrypted_key": entry['encryptedKey'], "user_id": target_user, "updated_at": now},
                )
                await session.execute(statement)
                written += 1

            # A write that lands nowhere must not leave the scope marked as keyed
            if written == 0:
                await session.rollback()
                return 0

            await session.commit()
            return written

    # Scope membership

    async def add_scope_members(self, scope: str, scope_id: str, user_ids: Iterable[str]) -> List[str]:
        """Add members to a group or channel scope, ignoring existing ones"""
        async with self.async_session() as session:
            result = await session.execute(
                select(ScopeMember.user_id).where(ScopeMember.scope == scope, ScopeMember.scope_id == scope_id)
            )
            members = {row[0] for row in result.all()}
            for user_id in user_ids:
                if user_id not in members:
                    session.add(ScopeMember(scope=scope, scope_id=scope_id, user_id=user_id))
                    members.add(user_id)
            await session.commit()
            return sorted(members)

    async def list_scope_members(self, scope: str, scope_id: str) -> List[str]:
        async with self.async_session() as session:
            result = await session.execute(
                select(ScopeMember.user_id)
                .where(ScopeMember.scope == scope, ScopeMember.scope_id == scope_id)
                .order_by(ScopeMember.user_id)
            )
            return [row[0] for row in result.all()]

    # Messages and files

    async def create_message(
        self,
        scope: str,
        scope_id: str,
        sender_id: str,
        content: str,
        content_nonce: Optional[str],
        is_encrypted: bool,
        media_id: Optional[int] = None,
        media_nonce: Optional[str] = None,
    ) -> Message:
        async with self.async_session() as session:
            message = Message(
                scope=scope,
                scope_id=scope_id,
                sender_id=sender_id,
                content=content,
                content_nonce=content_nonce,
                is_encrypted=is_encrypted,
                media_id=media_id,
                media_nonce=media_nonce,
            )
            session.add(message)
            await session.commit()
            await session.refresh(message)
            return message

    async def list_messages(self, scope: str, scope_id: str, limit: int = 50) -> List[Message]:
        """List the most recent messages of a scope, oldest first"""
        async with self.async_session() as session:
            result = await session.execute(
                select(Message)
                .where(Message.scope == scope, Message.scope_id == scope_id)
                .order_by(Message.id.desc())
                .limit(limit)
            )
            return list(reversed(result.scalars().all()))

    async def mark_message_encrypted(
        self,
        message_id: int,
        sender_id: str,
        content: str,
        content_nonce: str,
    ) -> Optional[Message]:
        """
        Replace a message's content with ciphertext. Only the sender's own
        messages are updated; repeated writes overwrite each other.

        Returns:
            The updated message, or None if no message of this sender matches
        """
        async with self.async_session() as session:
            result = await session.execute(
                select(Message).where(Message.id == message_id, Message.sender_id == sender_id)
            )
            message = result.scalar_one_or_none()
            if not message:
                return None
            message.content = content
            message.content_nonce = content_nonce
            message.is_encrypted = True
            await session.commit()
            return message

    async def store_file(
        self,
        scope: str,
        scope_id: str,
        uploader_id: str,
        filename: str,
        nonce: str,
        data: bytes,
    ) -> FileBlob:
        async with self.async_session() as session:
            blob = FileBlob(
                scope=scope,
                scope_id=scope_id,
                uploader_id=uploader_id,
                filename=filename,
                nonce=nonce,
                data=data,
            )
            session.add(blob)
            await session.commit()
            await session.refresh(blob)
            return blob

    async def get_file(self, file_id: int) -> Optional[FileBlob]:
        async with self.async_session() as session:
            result = await session.execute(select(FileBlob).where(FileBlob.id == file_id))
            return result.scalar_one_or_none()

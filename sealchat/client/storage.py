"""
Encrypted local storage for the chat client.

Durable key/value store holding this device's identity and its cached
conversation keys, encrypted on disk with a key derived from the user's password.
"""

import asyncio
import os
import sqlite3
import threading
from pathlib import Path
from typing import List, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from sealchat.crypto.errors import StorageError


VERIFIER_KEY = "__verifier__"
VERIFIER_VALUE = b"sealchat-storage-v1"
PBKDF2_ITERATIONS = 100000


class EncryptedStorage:
    """
    Manages encrypted local storage for one installation.

    Every value is encrypted with AES-256-GCM; the entry name is bound in as
    associated data so values cannot be swapped between entries.
    """

    def __init__(self, username: str, storage_dir: str = "client_data"):
        """
        Initialize encrypted storage.

        Args:
            username: Account this installation belongs to
            storage_dir: Directory to store encrypted data
        """
        self.username = username
        self.storage_dir = Path(storage_dir)
        self.db_path = self.storage_dir / f"{username}.db"
        self.salt_path = self.storage_dir / f"{username}.salt"
        self.encryption_key: Optional[bytes] = None
        self.db: Optional[sqlite3.Connection] = None
        # Async accessors run sqlite3 calls in worker threads, one at a time
        self._db_lock = threading.Lock()

    def derive_key(self, password: str, salt: bytes) -> bytes:
        """
        Derive encryption key from password using PBKDF2.

        Args:
            password: User's password
            salt: Salt for key derivation

        Returns:
            32-byte encryption key
        """
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=PBKDF2_ITERATIONS,
        )
        return kdf.derive(password.encode())

    def unlock(self, password: str) -> bool:
        """
        Unlock storage with password, creating it on first use.

        Returns:
            True if unlocked, False if the password does not match

        Raises:
            StorageError: If the storage directory or database is unusable
        """
        try:
            self.storage_dir.mkdir(parents=True, exist_ok=True)
            if not self.salt_path.exists():
                salt = os.urandom(16)
                self.salt_path.write_bytes(salt)
            else:
                salt = self.salt_path.read_bytes()
        except OSError as e:
            raise StorageError(f"Storage directory unavailable: {e}") from e

        self.encryption_key = self.derive_key(password, salt)
        self._init_database()

        stored = self._read(VERIFIER_KEY)
        if stored is None:
            self._write(VERIFIER_KEY, self._encrypt(VERIFIER_KEY, VERIFIER_VALUE))
            return True

        try:
            self._decrypt(VERIFIER_KEY, stored)
        except StorageError:
            self.close()
            self.encryption_key = None
            return False
        return True

    @property
    def unlocked(self) -> bool:
        return self.db is not None and self.encryption_key is not None

    def _init_database(self):
        """Initialize SQLite database"""
        try:
            self.db = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self.db.execute("""
                CREATE TABLE IF NOT EXISTS entries (
                    key TEXT PRIMARY KEY,
                    encrypted_value BLOB NOT NULL
                )
            """)
            self.db.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open {self.db_path}: {e}") from e

    def _encrypt(self, key: str, data: bytes) -> bytes:
        """Encrypt data with storage key"""
        if not self.encryption_key:
            raise StorageError("Storage not unlocked")

        nonce = os.urandom(12)
        aesgcm = AESGCM(self.encryption_key)
        return nonce + aesgcm.encrypt(nonce, data, key.encode())

    def _decrypt(self, key: str, encrypted_data: bytes) -> bytes:
        """Decrypt data with storage key"""
        if not self.encryption_key:
            raise StorageError("Storage not unlocked")

        aesgcm = AESGCM(self.encryption_key)
        try:
            return aesgcm.decrypt(encrypted_data[:12], encrypted_data[12:], key.encode())
        except (InvalidTag, ValueError) as e:
            raise StorageError(f"Entry {key!r} cannot be decrypted") from e

    def _connection(self) -> sqlite3.Connection:
        if self.db is None:
            raise StorageError("Storage not unlocked")
        return self.db

    def _read(self, key: str) -> Optional[bytes]:
        try:
            with self._db_lock:
                row = self._connection().execute(
                    "SELECT encrypted_value FROM entries WHERE key = ?", (key,)
                ).fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"Read of {key!r} failed: {e}") from e
        return row[0] if row else None

    def _write(self, key: str, encrypted: bytes):
        db = self._connection()
        try:
            with self._db_lock:
                db.execute(
                    "INSERT OR REPLACE INTO entries (key, encrypted_value) VALUES (?, ?)",
                    (key, encrypted)
                )
                db.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Write of {key!r} failed: {e}") from e

    async def get(self, key: str) -> Optional[str]:
        """
        Get a value.

        Raises:
            StorageError: If storage is locked, unreadable or the entry is corrupted
        """
        encrypted = await asyncio.to_thread(self._read, key)
        if encrypted is None:
            return None
        return self._decrypt(key, encrypted).decode()

    async def set(self, key: str, value: str):
        """Store a value, replacing any previous one"""
        await asyncio.to_thread(self._write, key, self._encrypt(key, value.encode()))

    async def delete(self, key: str):
        """Remove a value if present"""
        await asyncio.to_thread(self._delete, key)

    def _delete(self, key: str):
        db = self._connection()
        try:
            with self._db_lock:
                db.execute("DELETE FROM entries WHERE key = ?", (key,))
                db.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Delete of {key!r} failed: {e}") from e

    def keys(self, prefix: str = "") -> List[str]:
        """List stored entry names starting with prefix"""
        try:
            with self._db_lock:
                rows = self._connection().execute(
                    "SELECT key FROM entries WHERE key LIKE ? ESCAPE '\\' ORDER BY key",
                    (prefix.replace("%", r"\%").replace("_", r"\_") + "%",)
                ).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Listing entries failed: {e}") from e
        return [row[0] for row in rows if row[0] != VERIFIER_KEY]

    def close(self):
        """Close database connection"""
        if self.db:
            self.db.close()
            self.db = None

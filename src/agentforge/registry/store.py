"""SQLite-backed registry shared by plugin runtimes.

All collections live in one table keyed by ``(collection, id)``. Each
collection has its own reader/writer lock; writes are last-writer-wins.
Expired records are treated as absent and deleted lazily on read.
"""

from __future__ import annotations

import base64
import json
import logging
import os
import sqlite3
import time
import uuid
from collections.abc import Callable, Iterator
from contextlib import closing, contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from agentforge.errors import CredentialError, LifecycleError, RecordNotFoundError
from agentforge.registry.locks import ReadWriteLock
from agentforge.registry.schema import Collection, RegistryRecord

logger = logging.getLogger(__name__)

_NONCE_SIZE = 12
DEFAULT_RAG_TTL = 3600


def _timestamp(value: float | None) -> datetime | None:
    return None if value is None else datetime.fromtimestamp(value, UTC)


class Registry:
    """Durable key-document store for agents, context, credentials and caches."""

    def __init__(
        self,
        db_path: str | Path,
        credential_key: str | bytes | None = None,
        clock: Callable[[], float] = time.time,
    ):
        """Open (and create if needed) a registry database.

        Args:
            db_path: Path to the SQLite database file
            credential_key: AES key (raw bytes or base64 text) for credentials
            clock: Time source in epoch seconds
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._clock = clock
        self._locks = {collection: ReadWriteLock() for collection in Collection}
        self._aead = AESGCM(self._decode_key(credential_key)) if credential_key else None
        self._closed = False
        self._initialize_db()

    @staticmethod
    def _decode_key(key: str | bytes) -> bytes:
        raw = base64.b64decode(key, validate=True) if isinstance(key, str) else key
        if len(raw) not in (16, 24, 32):
            raise ValueError("credential key must be 16, 24 or 32 bytes")
        return raw

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        if self._closed:
            raise LifecycleError("Registry is closed")
        with closing(sqlite3.connect(self.db_path, timeout=30)) as conn:
            with conn:
                yield conn

    def _initialize_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS records (
                    collection TEXT NOT NULL,
                    id TEXT NOT NULL,
                    data TEXT NOT NULL,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL,
                    expires_at REAL,
                    PRIMARY KEY (collection, id)
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_records_expires ON records(expires_at)")

    def close(self) -> None:
        """Release the registry; later operations raise LifecycleError."""
        self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed

    # Generic operations

    def put(
        self,
        collection: Collection,
        record_id: str,
        data: dict[str, Any],
        ttl: float | None = None,
    ) -> RegistryRecord:
        """Insert or replace a record.

        Args:
            collection: Target collection
            record_id: Record id within the collection
            data: JSON-serializable document
            ttl: Seconds until expiry (None never expires, 0 is already expired)
        """
        now = self._clock()
        expires_at = None if ttl is None else now + ttl
        payload = json.dumps(data)
        with self._locks[collection].write(), self._connect() as conn:
            row = conn.execute(
                "SELECT created_at FROM records WHERE collection = ? AND id = ?",
                (collection.value, record_id),
            ).fetchone()
            created_at = row[0] if row else now
            conn.execute(
                """
                INSERT OR REPLACE INTO records
                    (collection, id, data, created_at, updated_at, expires_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """,
                (collection.value, record_id, payload, created_at, now, expires_at),
            )
        return RegistryRecord(
            id=record_id,
            collection=collection,
            data=data,
            created_at=_timestamp(created_at),
            updated_at=_timestamp(now),
            expires_at=_timestamp(expires_at),
        )

    def get(self, collection: Collection, record_id: str) -> RegistryRecord | None:
        """Fetch a live record; expired records are deleted and reported absent."""
        with self._locks[collection].read(), self._connect() as conn:
            row = conn.execute(
                """
                SELECT data, created_at, updated_at, expires_at FROM records
                WHERE collection = ? AND id = ?
            """,
                (collection.value, record_id),
            ).fetchone()
        if row is None:
            return None

        now = self._clock()
        if row[3] is not None and now >= row[3]:
            self._delete_expired(collection, record_id, now)
            return None

        return RegistryRecord(
            id=record_id,
            collection=collection,
            data=json.loads(row[0]),
            created_at=_timestamp(row[1]),
            updated_at=_timestamp(row[2]),
            expires_at=_timestamp(row[3]),
        )

    def _delete_expired(self, collection: Collection, record_id: str, now: float) -> None:
        with self._locks[collection].write(), self._connect() as conn:
            conn.execute(
                """
                DELETE FROM records
                WHERE collection = ? AND id = ? AND expires_at IS NOT NULL AND expires_at <= ?
            """,
                (collection.value, record_id, now),
            )
        logger.debug("Dropped expired %s record %s", collection, record_id)

    def delete(self, collection: Collection, record_id: str) -> bool:
        with self._locks[collection].write(), self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM records WHERE collection = ? AND id = ?",
                (collection.value, record_id),
            )
            deleted = cursor.rowcount
        return deleted > 0

    def list_records(self, collection: Collection) -> list[RegistryRecord]:
        """List live records of a collection, oldest first."""
        now = self._clock()
        with self._locks[collection].read(), self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id, data, created_at, updated_at, expires_at FROM records
                WHERE collection = ? AND (expires_at IS NULL OR expires_at > ?)
                ORDER BY created_at, id
            """,
                (collection.value, now),
            ).fetchall()
        return [
            RegistryRecord(
                id=row[0],
                collection=collection,
                data=json.loads(row[1]),
                created_at=_timestamp(row[2]),
                updated_at=_timestamp(row[3]),
                expires_at=_timestamp(row[4]),
            )
            for row in rows
        ]

    # Agents

    def register_agent(self, agent_id: str, data: dict[str, Any]) -> RegistryRecord:
        record = self.put(Collection.AGENTS, agent_id, data)
        logger.info("Registered agent %s", agent_id)
        return record

    def get_agent(self, agent_id: str) -> dict[str, Any] | None:
        record = self.get(Collection.AGENTS, agent_id)
        return record.data if record else None

    def list_agents(self) -> list[RegistryRecord]:
        return self.list_records(Collection.AGENTS)

    def delete_agent(self, agent_id: str) -> bool:
        return self.delete(Collection.AGENTS, agent_id)

    # Transferable context

    def store_context(self, context_id: str, agent_id: str, context: dict[str, Any]) -> None:
        self.put(
            Collection.TRANSFERABLE_CONTEXT,
            context_id,
            {"agent_id": agent_id, "context": context},
        )

    def get_context(self, context_id: str) -> dict[str, Any] | None:
        """Return ``{"agent_id": ..., "context": ...}`` or None."""
        record = self.get(Collection.TRANSFERABLE_CONTEXT, context_id)
        return record.data if record else None

    def transfer_context(self, context_id: str, target_agent_id: str) -> str:
        """Copy a context to a new id bound to another agent.

        Returns:
            The new context id

        Raises:
            RecordNotFoundError: If the source context does not exist
        """
        source = self.get_context(context_id)
        if source is None:
            raise RecordNotFoundError(f"Context '{context_id}' not found")
        new_id = str(uuid.uuid4())
        self.put(
            Collection.TRANSFERABLE_CONTEXT,
            new_id,
            {
                "agent_id": target_agent_id,
                "context": source["context"],
                "source_context_id": context_id,
                "source_agent_id": source["agent_id"],
            },
        )
        logger.info(
            "Transferred context %s from %s to %s as %s",
            context_id,
            source["agent_id"],
            target_agent_id,
            new_id,
        )
        return new_id

    def purge_context(self, agent_id: str | None = None) -> int:
        """Delete stored contexts (all, or one agent's). Returns the count."""
        collection = Collection.TRANSFERABLE_CONTEXT
        with self._locks[collection].write(), self._connect() as conn:
            if agent_id is None:
                cursor = conn.execute(
                    "DELETE FROM records WHERE collection = ?", (collection.value,)
                )
            else:
                cursor = conn.execute(
                    """
                    DELETE FROM records
                    WHERE collection = ? AND json_extract(data, '$.agent_id') = ?
                """,
                    (collection.value, agent_id),
                )
            purged = cursor.rowcount
        return purged

    # Credentials

    def store_credential(self, agent_id: str, name: str, secret: str) -> None:
        """Store a secret, encrypted with AES-GCM when a key is configured."""
        record_id = f"{agent_id}:{name}"
        if self._aead is None:
            data = {"encrypted": False, "value": secret}
        else:
            nonce = os.urandom(_NONCE_SIZE)
            ciphertext = nonce + self._aead.encrypt(nonce, secret.encode(), record_id.encode())
            data = {"encrypted": True, "value": base64.b64encode(ciphertext).decode()}
        self.put(Collection.CREDENTIALS, record_id, data)

    def get_credential(self, agent_id: str, name: str) -> str | None:
        """Fetch a secret.

        Raises:
            CredentialError: If the secret is encrypted and cannot be decrypted
        """
        record_id = f"{agent_id}:{name}"
        record = self.get(Collection.CREDENTIALS, record_id)
        if record is None:
            return None
        if not record.data.get("encrypted"):
            return record.data["value"]
        if self._aead is None:
            raise CredentialError(f"Credential '{record_id}' is encrypted and no key is configured")
        blob = base64.b64decode(record.data["value"])
        try:
            plaintext = self._aead.decrypt(blob[:_NONCE_SIZE], blob[_NONCE_SIZE:], record_id.encode())
        except InvalidTag as e:
            raise CredentialError(f"Credential '{record_id}' failed authentication") from e
        return plaintext.decode()

    # Retrieval cache

    def store_rag_result(self, query: str, result: Any, ttl: float = DEFAULT_RAG_TTL) -> None:
        self.put(Collection.CACHED_RETRIEVAL, query, {"query": query, "result": result}, ttl=ttl)

    def get_rag_result(self, query: str) -> Any | None:
        record = self.get(Collection.CACHED_RETRIEVAL, query)
        return record.data["result"] if record else None

    # Planning cache

    def store_cot_plan(self, task_id: str, plan: dict[str, Any]) -> None:
        self.put(Collection.PLANNING_CACHE, task_id, plan)

    def get_cot_plan(self, task_id: str) -> dict[str, Any] | None:
        record = self.get(Collection.PLANNING_CACHE, task_id)
        return record.data if record else None

    # User preferences

    def store_user_preference(self, user_id: str, key: str, value: Any) -> None:
        self.put(
            Collection.USER_PREFERENCES,
            f"{user_id}:{key}",
            {"user_id": user_id, "key": key, "value": value},
        )

    def get_user_preference(self, user_id: str, key: str) -> Any | None:
        record = self.get(Collection.USER_PREFERENCES, f"{user_id}:{key}")
        return record.data["value"] if record else None

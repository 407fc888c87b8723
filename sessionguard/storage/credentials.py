from __future__ import annotations

import asyncio
import threading
import uuid
from typing import Dict, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from sessionguard.logging import get_logger, hash_identifier
from sessionguard.storage.errors import ConstraintViolation
from sessionguard.storage.models import CredentialRecord

logger = get_logger(__name__)

_hasher = PasswordHasher(type=Type.ID)

# Verified against when the identifier is unknown so lookups take the same time
_DUMMY_HASH = _hasher.hash(uuid.uuid4().hex)


def hash_password(password: str) -> str:
    return _hasher.hash(password)


def verify_password(password: str, password_hash: Optional[str]) -> bool:
    if not password_hash:
        _safe_verify(_DUMMY_HASH, password)
        return False
    return _safe_verify(password_hash, password)


def _safe_verify(password_hash: str, password: str) -> bool:
    try:
        return _hasher.verify(password_hash, password)
    except VerifyMismatchError:
        return False
    except (InvalidHash, VerificationError):
        logger.warning("password_hash_invalid")
        return False


class CredentialStore(Protocol):
    """Lookup of login credentials owned by the account system."""

    async def find_by_identifier(self, identifier: str) -> Optional[CredentialRecord]:
        ...

    def verify_password(self, plain: str, password_hash: Optional[str]) -> bool:
        ...


class MemoryCredentialStore:
    """argon2-backed in-process account table for development and tests."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._records: Dict[str, CredentialRecord] = {}

    @staticmethod
    def _normalize(identifier: str) -> str:
        return identifier.strip().lower()

    def add_user(
        self,
        identifier: str,
        password: str,
        *,
        user_id: Optional[str] = None,
        role: str = "user",
        status: str = "active",
        email_verified: bool = True,
        phone_verified: bool = True,
    ) -> CredentialRecord:
        key = self._normalize(identifier)
        record = CredentialRecord(
            user_id=user_id or str(uuid.uuid4()),
            identifier=key,
            password_hash=hash_password(password),
            status=status,
            role=role,
            email_verified=email_verified,
            phone_verified=phone_verified,
        )
        with self._lock:
            if key in self._records:
                raise ConstraintViolation(
                    "identifier already registered", {"identifier_hash": hash_identifier(key)}
                )
            self._records[key] = record
        return record

    def set_status(self, identifier: str, status: str) -> None:
        with self._lock:
            self._records[self._normalize(identifier)].status = status

    async def find_by_identifier(self, identifier: str) -> Optional[CredentialRecord]:
        with self._lock:
            return self._records.get(self._normalize(identifier))

    def verify_password(self, plain: str, password_hash: Optional[str]) -> bool:
        return verify_password(plain, password_hash)


class PostgresCredentialStore:
    """Read-only lookup against the account system's ``users`` table."""

    def __init__(self, pool: ConnectionPool, *, table: str = "users") -> None:
        self.pool = pool
        self.table = table

    @classmethod
    def from_dsn(cls, dsn: str) -> "PostgresCredentialStore":
        pool = ConnectionPool(
            dsn,
            min_size=1,
            max_size=5,
            kwargs={"row_factory": dict_row, "autocommit": True},
            open=True,
        )
        return cls(pool)

    def _find(self, identifier: str) -> Optional[CredentialRecord]:
        key = identifier.strip().lower()
        with self.pool.connection() as conn:
            row = conn.execute(
                f"""
                SELECT id, email, phone, password_hash, status, role, email_verified, phone_verified
                FROM {self.table}
                WHERE lower(email) = %s OR phone = %s
                LIMIT 1
                """,
                (key, identifier.strip()),
            ).fetchone()
        if not row:
            return None
        return CredentialRecord(
            user_id=str(row["id"]),
            identifier=row.get("email") or row.get("phone") or key,
            password_hash=row.get("password_hash") or "",
            status=row.get("status") or "active",
            role=row.get("role") or "user",
            email_verified=bool(row.get("email_verified")),
            phone_verified=bool(row.get("phone_verified")),
        )

    async def find_by_identifier(self, identifier: str) -> Optional[CredentialRecord]:
        return await asyncio.to_thread(self._find, identifier)

    def verify_password(self, plain: str, password_hash: Optional[str]) -> bool:
        return verify_password(plain, password_hash)

    def close(self) -> None:
        self.pool.close()

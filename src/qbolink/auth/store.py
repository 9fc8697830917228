"""
Token storage — the only owner of credential state.

Every backend honours the same contract:

- ``get_active`` returns the newest active record for an owner, or None.
- ``replace_atomically`` deactivates whatever was active and installs the
  new record as one step. No reader ever sees two active records for the
  same (owner, realm), nor zero records where one existed before.
- ``deactivate_all`` / ``delete_all`` are idempotent and return how many
  records they touched.

Nothing outside a store holds on to "the current token"; callers re-read
it from the store whenever they need it.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path

from qbolink.auth.crypto import TokenCipher
from qbolink.models.token import TokenRecord

logger = logging.getLogger("qbolink.auth.store")

# Default token storage location
_DEFAULT_TOKEN_DIR = Path.home() / ".qbolink" / "tokens"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _check_record(owner_id: str, record: TokenRecord) -> None:
    if record.owner_id != owner_id:
        raise ValueError(
            f"Record belongs to {record.owner_id!r}, cannot store it for {owner_id!r}"
        )
    if not record.is_active:
        raise ValueError("Only an active record can replace the current token")


class TokenStore(ABC):
    """Durable storage for OAuth credentials, keyed by owner."""

    @abstractmethod
    async def get_active(self, owner_id: str) -> TokenRecord | None:
        ...

    @abstractmethod
    async def replace_atomically(self, owner_id: str, record: TokenRecord) -> TokenRecord:
        ...

    @abstractmethod
    async def deactivate_all(self, owner_id: str) -> int:
        ...

    @abstractmethod
    async def delete_all(self, owner_id: str) -> int:
        ...

    @abstractmethod
    async def list_records(self, owner_id: str) -> list[TokenRecord]:
        """Every record for an owner, active or not, oldest first."""
        ...

    async def close(self) -> None:
        """Release any resources held by the store."""


class MemoryTokenStore(TokenStore):
    """In-process store. Each operation is a single critical section."""

    def __init__(self) -> None:
        self._records: dict[str, list[TokenRecord]] = {}
        self._lock = threading.Lock()

    async def get_active(self, owner_id: str) -> TokenRecord | None:
        with self._lock:
            active = [r for r in self._records.get(owner_id, []) if r.is_active]
        return active[-1] if active else None

    async def replace_atomically(self, owner_id: str, record: TokenRecord) -> TokenRecord:
        _check_record(owner_id, record)
        now = _utcnow()
        with self._lock:
            existing = self._records.get(owner_id, [])
            updated = [r.deactivated(now) if r.is_active else r for r in existing]
            updated.append(record)
            # Swap the whole list in one assignment
            self._records[owner_id] = updated
        logger.debug("Replaced token for owner %s (realm %s)", owner_id, record.realm_id)
        return record

    async def deactivate_all(self, owner_id: str) -> int:
        now = _utcnow()
        with self._lock:
            existing = self._records.get(owner_id, [])
            count = sum(1 for r in existing if r.is_active)
            if count:
                self._records[owner_id] = [r.deactivated(now) if r.is_active else r for r in existing]
        return count

    async def delete_all(self, owner_id: str) -> int:
        with self._lock:
            return len(self._records.pop(owner_id, []))

    async def list_records(self, owner_id: str) -> list[TokenRecord]:
        with self._lock:
            return list(self._records.get(owner_id, []))


class FileTokenStore(TokenStore):
    """Encrypted JSON document per owner on local disk.

    Writes go to a temp file in the same directory and are swapped in with
    ``os.replace``, so a reader sees either the previous document or the new
    one. File names are hashes of the owner id. Disk access and key
    derivation run in a worker thread via ``asyncio.to_thread``.

    Usage::

        store = FileTokenStore(Path("~/.qbolink/tokens").expanduser())
        await store.replace_atomically("user_123", record)
    """

    def __init__(
        self,
        token_dir: Path | None = None,
        *,
        cipher: TokenCipher | None = None,
        encrypt: bool = True,
    ) -> None:
        self.token_dir = Path(token_dir or _DEFAULT_TOKEN_DIR)
        self.encrypt = encrypt
        self._cipher = cipher
        self._lock = threading.Lock()
        self._cipher_lock = threading.Lock()

    def _get_cipher(self) -> TokenCipher:
        # One derivation per store; the salt file must only be created once
        with self._cipher_lock:
            if self._cipher is None:
                self._cipher = TokenCipher.for_machine(self.token_dir / ".key_salt")
            return self._cipher

    def _token_file(self, owner_id: str) -> Path:
        digest = hashlib.sha256(owner_id.encode("utf-8")).hexdigest()[:32]
        return self.token_dir / f"{digest}.json"

    def _read(self, owner_id: str) -> list[TokenRecord]:
        path = self._token_file(owner_id)
        if not path.exists():
            return []
        content = path.read_text()
        if self.encrypt:
            content = self._get_cipher().decrypt(content)
        data = json.loads(content)
        return [TokenRecord.from_dict(item) for item in data.get("records", [])]

    def _write(self, owner_id: str, records: list[TokenRecord]) -> None:
        self.token_dir.mkdir(parents=True, exist_ok=True)
        content = json.dumps({"owner_id": owner_id, "records": [r.to_dict() for r in records]}, indent=2)
        if self.encrypt:
            content = self._get_cipher().encrypt(content)

        fd, tmp_name = tempfile.mkstemp(dir=self.token_dir, prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(content)
            # Restrict file permissions to owner only
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, self._token_file(owner_id))
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    # ------------------------------------------------------------------
    # Blocking implementations
    # ------------------------------------------------------------------

    def _get_active_sync(self, owner_id: str) -> TokenRecord | None:
        active = [r for r in self._read(owner_id) if r.is_active]
        return active[-1] if active else None

    def _replace_sync(self, owner_id: str, record: TokenRecord) -> TokenRecord:
        now = _utcnow()
        with self._lock:
            records = [r.deactivated(now) if r.is_active else r for r in self._read(owner_id)]
            records.append(record)
            self._write(owner_id, records)
        return record

    def _deactivate_sync(self, owner_id: str) -> int:
        now = _utcnow()
        with self._lock:
            records = self._read(owner_id)
            count = sum(1 for r in records if r.is_active)
            if count:
                self._write(owner_id, [r.deactivated(now) if r.is_active else r for r in records])
        return count

    def _delete_sync(self, owner_id: str) -> int:
        with self._lock:
            records = self._read(owner_id)
            self._token_file(owner_id).unlink(missing_ok=True)
        return len(records)

    # ------------------------------------------------------------------
    # TokenStore API
    # ------------------------------------------------------------------

    async def get_active(self, owner_id: str) -> TokenRecord | None:
        return await asyncio.to_thread(self._get_active_sync, owner_id)

    async def replace_atomically(self, owner_id: str, record: TokenRecord) -> TokenRecord:
        _check_record(owner_id, record)
        stored = await asyncio.to_thread(self._replace_sync, owner_id, record)
        logger.debug("Saved token for owner %s to %s", owner_id, self._token_file(owner_id))
        return stored

    async def deactivate_all(self, owner_id: str) -> int:
        return await asyncio.to_thread(self._deactivate_sync, owner_id)

    async def delete_all(self, owner_id: str) -> int:
        count = await asyncio.to_thread(self._delete_sync, owner_id)
        if count:
            logger.info("Deleted %d token record(s) for owner %s", count, owner_id)
        return count

    async def list_records(self, owner_id: str) -> list[TokenRecord]:
        return await asyncio.to_thread(self._read, owner_id)

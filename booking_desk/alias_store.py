"""Short aliases for manage links, persisted in a single JSON file.

The file maps ``alias -> {token, expiresAt, createdAt}``. Expired entries
are removed lazily whenever they are encountered, or in bulk by
``purge_expired``.
"""

import json
import logging
import os
import secrets
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from booking_desk.models import ManageLinkAliasRecord, parse_iso_datetime

logger = logging.getLogger(__name__)

ALIAS_BYTE_LENGTH = 6  # 8 characters once base64url encoded
MAX_GENERATION_ATTEMPTS = 5

AliasRecords = Dict[str, ManageLinkAliasRecord]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def generate_alias() -> str:
    return secrets.token_urlsafe(ALIAS_BYTE_LENGTH)


def is_expired(expires_at: str, now: datetime) -> bool:
    # Unparseable expiries never expire; they can only be removed by hand.
    expiry = parse_iso_datetime(expires_at)
    if expiry is None:
        return False
    return expiry <= now


class AliasFile:
    """Atomic JSON persistence for alias records."""

    def __init__(self, path: str | Path, clock: Callable[[], datetime] = _utcnow):
        self.path = Path(path)
        self._clock = clock

    def _normalize(self, candidate: Any) -> AliasRecords:
        if not isinstance(candidate, dict):
            return {}

        records: AliasRecords = {}
        for alias, raw in candidate.items():
            if not isinstance(raw, dict):
                continue
            token = raw.get("token")
            expires_at = raw.get("expiresAt")
            if not isinstance(token, str) or not isinstance(expires_at, str):
                continue
            created_at = raw.get("createdAt")
            if not isinstance(created_at, (int, float)) or isinstance(created_at, bool):
                created_at = _epoch_ms(self._clock())
            records[alias] = ManageLinkAliasRecord(
                token=token, expires_at=expires_at, created_at=int(created_at)
            )
        return records

    def read(self) -> AliasRecords:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                return self._normalize(json.load(f))
        except FileNotFoundError:
            return {}

    def write(self, records: AliasRecords) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        serialized = {alias: record.to_dict() for alias, record in records.items()}

        # Each save gets its own temp file so concurrent writers never share one.
        with tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            dir=self.path.parent,
            prefix=f".{self.path.name}.",
            suffix=".tmp",
            delete=False,
        ) as f:
            tmp_path = Path(f.name)
            try:
                json.dump(serialized, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            except BaseException:
                f.close()
                tmp_path.unlink(missing_ok=True)
                raise
        os.replace(tmp_path, self.path)
        logger.debug(f"Wrote {len(records)} manage link aliases to {self.path}")

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)


class ManageLinkAliasStore:
    """Maps short random aliases to manage-link tokens."""

    def __init__(
        self,
        storage: AliasFile,
        clock: Callable[[], datetime] = _utcnow,
        alias_factory: Callable[[], str] = generate_alias,
    ):
        self.storage = storage
        self._clock = clock
        self._alias_factory = alias_factory
        self._lock = threading.RLock()

    @classmethod
    def at_path(
        cls, path: str | Path, clock: Callable[[], datetime] = _utcnow
    ) -> "ManageLinkAliasStore":
        return cls(AliasFile(path, clock=clock), clock=clock)

    def register(self, token: str, expires_at: str) -> Optional[str]:
        """Return the live alias for ``token``, creating one if needed.

        Returns None when no free alias could be generated.
        """
        if not token:
            return None

        with self._lock:
            now = self._clock()
            records = self.storage.read()
            changed = False
            existing_alias = None

            for alias, record in list(records.items()):
                if is_expired(record.expires_at, now):
                    del records[alias]
                    changed = True
                    continue
                if existing_alias is None and record.token == token:
                    existing_alias = alias

            if existing_alias:
                if changed:
                    self.storage.write(records)
                return existing_alias

            new_alias = None
            for _ in range(MAX_GENERATION_ATTEMPTS):
                candidate = self._alias_factory()
                if candidate in records:
                    continue
                records[candidate] = ManageLinkAliasRecord(
                    token=token, expires_at=expires_at, created_at=_epoch_ms(now)
                )
                changed = True
                new_alias = candidate
                break
            else:
                logger.warning(
                    f"Could not generate a unique manage link alias after {MAX_GENERATION_ATTEMPTS} attempts"
                )

            if changed:
                self.storage.write(records)
            return new_alias

    def resolve(self, alias: str) -> Optional[ManageLinkAliasRecord]:
        if not alias:
            return None

        with self._lock:
            records = self.storage.read()
            record = records.get(alias)
            if record is None:
                return None

            if is_expired(record.expires_at, self._clock()):
                del records[alias]
                self.storage.write(records)
                return None
            return record

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Delete every expired alias and return how many were removed."""
        now = now or self._clock()
        with self._lock:
            records = self.storage.read()
            expired = [
                alias
                for alias, record in records.items()
                if is_expired(record.expires_at, now)
            ]
            for alias in expired:
                del records[alias]

            if expired:
                self.storage.write(records)
                logger.info(f"Purged {len(expired)} expired manage link aliases")
            return len(expired)

    def reset(self) -> None:
        with self._lock:
            self.storage.clear()

"""Persistence of per-user Google Calendar credentials."""

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol
from urllib.parse import quote

logger = logging.getLogger(__name__)


class CredentialNotFound(LookupError):
    """Raised when no credential is stored for a user."""


class TokenStoreError(Exception):
    """Raised when a credential cannot be written or decoded."""


@dataclass(slots=True)
class Credential:
    """OAuth tokens plus the primary calendar of one user."""

    user_id: str
    access_token: str | None
    refresh_token: str | None = None
    calendar_id: str | None = None
    expires_at: datetime | None = None

    @property
    def is_connected(self) -> bool:
        return bool(self.access_token and self.calendar_id)

    def is_expired(self, *, now: datetime | None = None) -> bool:
        reference = now or datetime.now(timezone.utc)
        if self.expires_at is None:
            return False
        return reference >= self.expires_at

    def authorization_header(self) -> str:
        return f"Bearer {self.access_token}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "calendar_id": self.calendar_id,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Credential":
        expires_at = data.get("expires_at")
        return cls(
            user_id=data["user_id"],
            access_token=data.get("access_token"),
            refresh_token=data.get("refresh_token"),
            calendar_id=data.get("calendar_id"),
            expires_at=datetime.fromisoformat(expires_at) if expires_at else None,
        )


def encode_credential(credential: Credential) -> bytes:
    return json.dumps(credential.to_dict(), sort_keys=True).encode("utf-8")


def decode_credential(raw: bytes) -> Credential:
    try:
        return Credential.from_dict(json.loads(raw.decode("utf-8")))
    except (ValueError, KeyError, TypeError) as exc:
        raise TokenStoreError("Stored credential is malformed") from exc


class TokenStore(Protocol):
    def get(self, user_id: str) -> Credential: ...

    def put(self, user_id: str, credential: Credential) -> None: ...

    def delete(self, user_id: str) -> bool: ...


def _check_owner(user_id: str, credential: Credential) -> None:
    if credential.user_id != user_id:
        raise TokenStoreError(
            f"Credential belongs to user '{credential.user_id}', not '{user_id}'"
        )


class InMemoryTokenStore:
    """Token store keeping each credential as a serialized row in memory."""

    def __init__(self) -> None:
        self._rows: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def get(self, user_id: str) -> Credential:
        with self._lock:
            row = self._rows.get(user_id)
        if row is None:
            raise CredentialNotFound(user_id)
        return decode_credential(row)

    def put(self, user_id: str, credential: Credential) -> None:
        _check_owner(user_id, credential)
        row = encode_credential(credential)
        with self._lock:
            self._rows[user_id] = row

    def delete(self, user_id: str) -> bool:
        with self._lock:
            return self._rows.pop(user_id, None) is not None

    def raw(self, user_id: str) -> bytes:
        with self._lock:
            row = self._rows.get(user_id)
        if row is None:
            raise CredentialNotFound(user_id)
        return row


class JsonFileTokenStore:
    """Token store writing one JSON document per user into a directory."""

    def __init__(self, directory: str | os.PathLike[str]) -> None:
        self._directory = Path(directory)
        self._lock = threading.Lock()

    def _path(self, user_id: str) -> Path:
        return self._directory / f"{quote(user_id, safe='')}.json"

    def get(self, user_id: str) -> Credential:
        return decode_credential(self.raw(user_id))

    def put(self, user_id: str, credential: Credential) -> None:
        _check_owner(user_id, credential)
        path = self._path(user_id)
        tmp_path = path.with_suffix(".json.tmp")
        try:
            with self._lock:
                self._directory.mkdir(parents=True, exist_ok=True)
                tmp_path.write_bytes(encode_credential(credential))
                os.replace(tmp_path, path)
        except OSError as exc:
            logger.exception("Unable to write credential file %s: %s", path, exc)
            raise TokenStoreError(f"Unable to persist credential for user '{user_id}'") from exc

    def delete(self, user_id: str) -> bool:
        with self._lock:
            try:
                self._path(user_id).unlink()
            except FileNotFoundError:
                return False
        return True

    def raw(self, user_id: str) -> bytes:
        path = self._path(user_id)
        try:
            return path.read_bytes()
        except FileNotFoundError as exc:
            raise CredentialNotFound(user_id) from exc
        except OSError as exc:
            raise TokenStoreError(f"Unable to read credential for user '{user_id}'") from exc

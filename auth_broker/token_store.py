"""
Per-session provider credentials in Redis.
Key: session:<session_id>:<provider>:<account_id>. One session may hold several accounts of the
same provider. Storage TTL follows token expiry, so a record not refreshed in time evicts itself.
"""
import json
import logging
import math
import time
from dataclasses import asdict, dataclass

import redis

from auth_broker.config import CREDENTIAL_RETENTION_SECONDS

logger = logging.getLogger(__name__)

SESSION_KEY_PREFIX = "session:"
_GLOB_SPECIAL = "\\*?[]"


@dataclass
class CredentialRecord:
    access_token: str
    refresh_token: str
    expiry: float
    account_id: str
    display_name: str
    email: str

    def expired(self, now: float | None = None) -> bool:
        return self.expiry <= (time.time() if now is None else now)


@dataclass
class StoredCredential:
    """A record together with the provider parsed out of its key."""

    provider: str
    account_id: str
    record: CredentialRecord


def _escape_glob(value: str) -> str:
    return "".join("\\" + c if c in _GLOB_SPECIAL else c for c in value)


def credential_key(session_id: str, provider: str, account_id: str) -> str:
    return f"{SESSION_KEY_PREFIX}{session_id}:{provider}:{account_id}"


def _decode(value: str | bytes) -> CredentialRecord:
    data = json.loads(value)
    return CredentialRecord(
        access_token=data["access_token"],
        refresh_token=data.get("refresh_token") or "",
        expiry=float(data["expiry"]),
        account_id=data["account_id"],
        display_name=data.get("display_name") or "",
        email=data.get("email") or "",
    )


class CredentialStore:
    """
    Redis errors propagate to the caller. Reads never extend a record's expiry.
    retention_seconds keeps a record that long past token expiry so it can still be refreshed.
    """

    def __init__(self, client: redis.Redis, retention_seconds: int = CREDENTIAL_RETENTION_SECONDS):
        self.redis = client
        self.retention_seconds = retention_seconds

    def put(self, session_id: str, provider: str, record: CredentialRecord) -> None:
        remaining = record.expiry - time.time() + self.retention_seconds
        ttl_ms = max(1, math.ceil(remaining * 1000))
        key = credential_key(session_id, provider, record.account_id)
        self.redis.set(key, json.dumps(asdict(record)), px=ttl_ms)
        logger.info(
            "Stored credential for session %s..., provider %s, account %s",
            session_id[:8],
            provider,
            record.account_id,
        )

    def get(self, session_id: str, provider: str, account_id: str) -> CredentialRecord | None:
        value = self.redis.get(credential_key(session_id, provider, account_id))
        if value is None:
            return None
        try:
            return _decode(value)
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("Undecodable credential for provider %s, account %s: %s", provider, account_id, e)
            return None

    def delete(self, session_id: str, provider: str, account_id: str) -> bool:
        removed = self.redis.delete(credential_key(session_id, provider, account_id))
        return removed > 0

    def delete_all(self, session_id: str, provider: str) -> int:
        """Delete every account of provider under the session. Zero matches is not an error."""
        pattern = f"{SESSION_KEY_PREFIX}{_escape_glob(session_id)}:{_escape_glob(provider)}:*"
        keys = list(self.redis.scan_iter(match=pattern))
        if not keys:
            return 0
        return self.redis.delete(*keys)

    def list_by_session(self, session_id: str) -> list[StoredCredential]:
        """
        All credentials under the session. Keys or values that do not parse are skipped
        so one bad entry does not hide the rest.
        """
        prefix = f"{SESSION_KEY_PREFIX}{session_id}:"
        pattern = f"{SESSION_KEY_PREFIX}{_escape_glob(session_id)}:*"
        found = []
        for key in self.redis.scan_iter(match=pattern):
            if isinstance(key, bytes):
                key = key.decode("utf-8", "replace")
            provider, sep, account_id = key[len(prefix):].partition(":")
            if not sep or not provider or not account_id:
                logger.warning("Skipping malformed credential key %s", key)
                continue
            value = self.redis.get(key)
            if value is None:
                # expired between SCAN and GET
                continue
            try:
                record = _decode(value)
            except (ValueError, KeyError, TypeError) as e:
                logger.warning("Skipping undecodable credential under key %s: %s", key, e)
                continue
            found.append(StoredCredential(provider=provider, account_id=account_id, record=record))
        found.sort(key=lambda c: (c.provider, c.account_id))
        return found

"""
PKCE (RFC 7636) verifier/challenge generation, the pending-verifier store, and the
provider authorization URL. S256 only.
"""
import hashlib
import json
import logging
import secrets
from base64 import urlsafe_b64encode
from dataclasses import dataclass
from urllib.parse import urlencode

import redis

from auth_broker.config import PKCE_TTL_SECONDS

logger = logging.getLogger(__name__)

PKCE_KEY_PREFIX = "pkce:"


def generate_pkce() -> tuple[str, str]:
    """
    Generate code_verifier and code_challenge (S256).
    Returns (code_verifier, code_challenge). Verifier is 43 chars (256 bits entropy).
    """
    # 32 bytes -> 43 chars base64url (RFC 7636 recommendation)
    code_verifier = secrets.token_urlsafe(32)
    return code_verifier, code_challenge_for(code_verifier)


def code_challenge_for(code_verifier: str) -> str:
    """base64url(SHA256(verifier)) without padding."""
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def build_authorize_url(
    *,
    authorize_url: str,
    client_id: str,
    redirect_uri: str,
    scopes: tuple[str, ...] | list[str],
    state: str,
    code_challenge: str,
) -> str:
    """Build the provider authorization URL, requesting offline access (refresh token)."""
    params = {
        "response_type": "code",
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "scope": " ".join(scopes),
        "state": state,
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
        "access_type": "offline",
    }
    separator = "&" if "?" in authorize_url else "?"
    return f"{authorize_url}{separator}{urlencode(params)}"


@dataclass
class PKCEEntry:
    code_verifier: str
    redirect_uri: str


class PKCEStore:
    """
    Pending verifiers keyed by state token, with a short TTL.
    consume() reads and deletes in one transaction, so a verifier is handed out at most once
    even when two callbacks race on the same state.
    """

    def __init__(self, client: redis.Redis, ttl_seconds: int = PKCE_TTL_SECONDS):
        self.redis = client
        self.ttl_seconds = ttl_seconds

    def store(self, state_token: str, code_verifier: str, redirect_uri: str) -> None:
        value = json.dumps({"code_verifier": code_verifier, "redirect_uri": redirect_uri})
        self.redis.set(PKCE_KEY_PREFIX + state_token, value, ex=self.ttl_seconds)

    def consume(self, state_token: str) -> PKCEEntry | None:
        key = PKCE_KEY_PREFIX + state_token
        with self.redis.pipeline(transaction=True) as pipe:
            pipe.get(key)
            pipe.delete(key)
            value, _ = pipe.execute()
        if not value:
            return None
        try:
            data = json.loads(value)
            return PKCEEntry(code_verifier=data["code_verifier"], redirect_uri=data.get("redirect_uri", ""))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("Discarding undecodable PKCE entry for state %s...: %s", state_token[:8], e)
            return None

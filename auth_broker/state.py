"""
CSRF state tokens. The public state parameter is "<token>|<redirect_uri>"; only the token half
is recorded server-side, and its presence in the store is the validity signal.
"""
import secrets

import redis

from auth_broker.config import STATE_TTL_SECONDS
from auth_broker.errors import MalformedState

STATE_KEY_PREFIX = "state:"
STATE_SEPARATOR = "|"


def generate_state_token() -> str:
    """Opaque value for CSRF protection; never derived from request input."""
    return secrets.token_urlsafe(32)


def bind_state(token: str, redirect_uri: str) -> str:
    return f"{token}{STATE_SEPARATOR}{redirect_uri}"


def split_state(state: str | None) -> tuple[str, str]:
    """Split on the first separator into (token, redirect_uri). Raises MalformedState."""
    if not state or STATE_SEPARATOR not in state:
        raise MalformedState()
    token, redirect_uri = state.split(STATE_SEPARATOR, 1)
    if not token:
        raise MalformedState()
    return token, redirect_uri


class StateStore:
    def __init__(self, client: redis.Redis, ttl_seconds: int = STATE_TTL_SECONDS):
        self.redis = client
        self.ttl_seconds = ttl_seconds

    def issue(self, token: str) -> None:
        self.redis.set(STATE_KEY_PREFIX + token, "1", ex=self.ttl_seconds)

    def validate(self, token: str) -> bool:
        return bool(self.redis.exists(STATE_KEY_PREFIX + token))

    def consume(self, token: str) -> bool:
        """Delete the token; True only for the caller that actually removed it."""
        return self.redis.delete(STATE_KEY_PREFIX + token) == 1

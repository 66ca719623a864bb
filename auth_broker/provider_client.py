"""
Outbound calls to a provider: authorization-code exchange, refresh_token grant, user info.
Failures raise ProviderError with the upstream description; callers map it to their own error.
"""
import logging
import time
from dataclasses import dataclass

import httpx

from auth_broker.config import DEFAULT_TOKEN_LIFETIME_SECONDS, HTTP_TIMEOUT_SECONDS
from auth_broker.errors import ProviderError
from auth_broker.providers import ProviderDescriptor, UserInfo

logger = logging.getLogger(__name__)


@dataclass
class TokenSet:
    access_token: str
    refresh_token: str
    expiry: float


def _error_description(r: httpx.Response) -> str:
    err = {}
    if r.headers.get("content-type", "").startswith("application/json"):
        try:
            err = r.json()
        except ValueError:
            err = {}
    if not isinstance(err, dict):
        err = {}
    return str(err.get("error_description") or err.get("error") or r.text or f"HTTP {r.status_code}")


def _token_request(descriptor: ProviderDescriptor, data: dict) -> dict:
    data = {**data, "client_id": descriptor.client_id}
    if descriptor.client_secret:
        data["client_secret"] = descriptor.client_secret
    try:
        r = httpx.post(
            descriptor.token_url,
            data=data,
            headers={"Accept": "application/json"},
            timeout=HTTP_TIMEOUT_SECONDS,
        )
    except httpx.HTTPError as e:
        raise ProviderError(str(e)) from e
    if r.status_code != 200:
        raise ProviderError(_error_description(r))
    try:
        body = r.json()
    except ValueError as e:
        raise ProviderError("token endpoint returned invalid JSON") from e
    if not isinstance(body, dict) or not body.get("access_token"):
        raise ProviderError("server response missing access_token")
    return body


def _token_set(body: dict, fallback_refresh_token: str = "") -> TokenSet:
    try:
        expires_in = int(body.get("expires_in") or 0)
    except (TypeError, ValueError):
        expires_in = 0
    if expires_in <= 0:
        logger.warning("Token response without expires_in; assuming %ss", DEFAULT_TOKEN_LIFETIME_SECONDS)
        expires_in = DEFAULT_TOKEN_LIFETIME_SECONDS
    return TokenSet(
        access_token=body["access_token"],
        # Providers that do not rotate refresh tokens omit it from refresh responses
        refresh_token=body.get("refresh_token") or fallback_refresh_token,
        expiry=time.time() + expires_in,
    )


def exchange_code(descriptor: ProviderDescriptor, code: str, code_verifier: str) -> TokenSet:
    body = _token_request(
        descriptor,
        {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": descriptor.redirect_url,
            "code_verifier": code_verifier,
        },
    )
    return _token_set(body)


def refresh_access_token(descriptor: ProviderDescriptor, refresh_token: str) -> TokenSet:
    """Exchange refresh_token for new tokens."""
    if not refresh_token:
        raise ProviderError("no refresh token available")
    body = _token_request(descriptor, {"grant_type": "refresh_token", "refresh_token": refresh_token})
    return _token_set(body, fallback_refresh_token=refresh_token)


def fetch_user_info(descriptor: ProviderDescriptor, access_token: str) -> UserInfo:
    """GET the provider's user-info endpoint and normalize it via the descriptor's response variant."""
    try:
        r = httpx.get(
            descriptor.userinfo_url,
            headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
            timeout=HTTP_TIMEOUT_SECONDS,
        )
    except httpx.HTTPError as e:
        raise ProviderError(str(e)) from e
    if r.status_code != 200:
        raise ProviderError(_error_description(r))
    try:
        payload = r.json()
    except ValueError as e:
        raise ProviderError("user info endpoint returned invalid JSON") from e
    try:
        return descriptor.parse_user_info(payload)
    except ValueError as e:
        raise ProviderError(str(e)) from e

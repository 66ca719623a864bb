"""
Login broker: login -> provider -> callback -> code exchange -> credential stored under a new
session; plus token retrieval, logout and status over the credential store.

Callback ordering matters: the PKCE entry is consumed before the code is looked at, so omitting
the code never skips the CSRF check, and the verifier is gone whether or not the exchange works.
"""
import logging
import uuid
from dataclasses import dataclass

import redis

from auth_broker import provider_client
from auth_broker.errors import (
    AuthorizationDenied,
    CredentialNotFound,
    ExchangeFailed,
    InvalidOrExpiredState,
    InvalidRedirectURI,
    MissingAuthorizationCode,
    MissingRequiredParameter,
    MissingSession,
    ProviderError,
    StorageFailure,
    UnsupportedProvider,
    UserInfoFetchFailed,
)
from auth_broker.pkce import PKCEStore, build_authorize_url, generate_pkce
from auth_broker.providers import ProviderDescriptor, ProviderRegistry
from auth_broker.redirect import validate_redirect_uri
from auth_broker.refresh import TokenRefresher
from auth_broker.state import StateStore, bind_state, generate_state_token, split_state
from auth_broker.token_store import CredentialRecord, CredentialStore

logger = logging.getLogger(__name__)


def _usable_session_id(session_id: str | None) -> bool:
    """Server-issued ids are UUIDs; ":" would make the credential key grammar ambiguous."""
    return bool(session_id) and ":" not in session_id


@dataclass
class CallbackResult:
    session_id: str
    redirect_uri: str
    provider: str
    account_id: str


class AuthBroker:
    def __init__(
        self,
        providers: ProviderRegistry,
        allowed_redirect_domains: list[str] | tuple[str, ...],
        pkce_store: PKCEStore,
        state_store: StateStore,
        credentials: CredentialStore,
        refresher: TokenRefresher | None = None,
        reuse_sessions: bool = False,
    ):
        self.providers = providers
        self.allowed_redirect_domains = tuple(allowed_redirect_domains)
        self.pkce_store = pkce_store
        self.state_store = state_store
        self.credentials = credentials
        self.refresher = refresher or TokenRefresher(credentials)
        self.reuse_sessions = reuse_sessions

    @classmethod
    def from_redis(
        cls,
        client: redis.Redis,
        providers: ProviderRegistry,
        allowed_redirect_domains: list[str] | tuple[str, ...],
        reuse_sessions: bool = False,
    ) -> "AuthBroker":
        credentials = CredentialStore(client)
        return cls(
            providers=providers,
            allowed_redirect_domains=allowed_redirect_domains,
            pkce_store=PKCEStore(client),
            state_store=StateStore(client),
            credentials=credentials,
            refresher=TokenRefresher(credentials),
            reuse_sessions=reuse_sessions,
        )

    def _provider(self, name: str, *, status_code: int | None = None) -> ProviderDescriptor:
        descriptor = self.providers.get(name)
        if descriptor is None:
            logger.error("Unsupported provider %s", name)
            raise UnsupportedProvider(status_code=status_code)
        return descriptor

    def _check_redirect(self, redirect_uri: str) -> None:
        if not validate_redirect_uri(redirect_uri, self.allowed_redirect_domains):
            logger.error("Invalid redirect URI %s", redirect_uri)
            raise InvalidRedirectURI()

    def login(self, provider: str, redirect_uri: str | None) -> str:
        """Start a login; returns the provider authorization URL to redirect to."""
        logger.info("Starting login for provider %s, redirect_uri %s", provider, redirect_uri)
        descriptor = self._provider(provider, status_code=404)
        if not redirect_uri:
            raise MissingRequiredParameter("Missing required parameter: redirect_uri")
        self._check_redirect(redirect_uri)

        state_token = generate_state_token()
        code_verifier, code_challenge = generate_pkce()
        try:
            self.state_store.issue(state_token)
            self.pkce_store.store(state_token, code_verifier, redirect_uri)
        except redis.RedisError as e:
            logger.error("Failed to store PKCE data for state %s...: %s", state_token[:8], e)
            raise StorageFailure("Server error while storing PKCE data") from e

        url = build_authorize_url(
            authorize_url=descriptor.authorize_url,
            client_id=descriptor.client_id,
            redirect_uri=descriptor.redirect_url,
            scopes=descriptor.scopes,
            state=bind_state(state_token, redirect_uri),
            code_challenge=code_challenge,
        )
        logger.info("Redirecting to provider %s", provider)
        return url

    def callback(
        self,
        provider: str,
        state: str | None,
        code: str | None,
        *,
        error: str | None = None,
        error_description: str | None = None,
        current_session_id: str | None = None,
    ) -> CallbackResult:
        """Finish a login. Every failure is terminal; the client has to start over."""
        logger.info("Received callback for provider %s", provider)
        descriptor = self._provider(provider)
        state_token, redirect_uri = split_state(state)
        self._check_redirect(redirect_uri)

        try:
            entry = self.pkce_store.consume(state_token)
        except redis.RedisError as e:
            logger.error("Failed to read PKCE data for state %s...: %s", state_token[:8], e)
            raise StorageFailure("Failed to retrieve code verifier") from e
        if entry is None:
            logger.warning("Unknown, expired or replayed state %s...", state_token[:8])
            raise InvalidOrExpiredState()

        self._discard_state_token(state_token)

        # The redirect URI travels through the provider in clear; it must match what login recorded
        if entry.redirect_uri and entry.redirect_uri != redirect_uri:
            logger.warning("Redirect URI in state %s... does not match the one issued at login", state_token[:8])
            raise InvalidOrExpiredState()

        if error:
            logger.warning("Provider %s returned error %s", provider, error)
            raise AuthorizationDenied(f"Authorization failed: {error_description or error}")

        if not code:
            logger.error("Authorization code not provided for provider %s", provider)
            raise MissingAuthorizationCode()

        try:
            tokens = provider_client.exchange_code(descriptor, code, entry.code_verifier)
        except ProviderError as e:
            logger.error("Failed to exchange token with provider %s: %s", provider, e)
            raise ExchangeFailed(f"Failed to exchange token: {e}") from e

        try:
            user = provider_client.fetch_user_info(descriptor, tokens.access_token)
        except ProviderError as e:
            logger.error("Failed to fetch user information from provider %s: %s", provider, e)
            raise UserInfoFetchFailed(f"Failed to fetch user information: {e}") from e

        session_id = self._session_for_login(current_session_id)
        record = CredentialRecord(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expiry=tokens.expiry,
            account_id=user.id,
            display_name=user.display_name,
            email=user.email,
        )
        try:
            self.credentials.put(session_id, provider, record)
        except redis.RedisError as e:
            logger.error("Failed to store token for provider %s, account %s: %s", provider, user.id, e)
            raise StorageFailure("Failed to store token") from e

        logger.info("Authenticated account %s with provider %s", user.id, provider)
        return CallbackResult(session_id=session_id, redirect_uri=redirect_uri, provider=provider, account_id=user.id)

    def _session_for_login(self, current_session_id: str | None) -> str:
        """
        A fresh session id, unless session reuse is on and the presented session still holds
        credentials. Unknown or empty sessions are never adopted.
        """
        if self.reuse_sessions and _usable_session_id(current_session_id):
            try:
                if self.credentials.list_by_session(current_session_id):
                    return current_session_id
            except redis.RedisError as e:
                logger.warning("Could not inspect session %s...; starting a new one: %s", current_session_id[:8], e)
        return str(uuid.uuid4())

    def _discard_state_token(self, state_token: str) -> None:
        """Best effort: the PKCE entry already enforced single use, so failures are only logged."""
        try:
            self.state_store.consume(state_token)
        except redis.RedisError as e:
            logger.error("Failed to delete state token %s...: %s", state_token[:8], e)

    def get_token(self, provider: str, session_id: str | None, account_id: str | None) -> CredentialRecord:
        """Stored credential for (session, provider, account), refreshed first if expired."""
        descriptor = self._provider(provider)
        if not _usable_session_id(session_id):
            raise MissingSession()
        if not account_id:
            raise MissingRequiredParameter("User ID is required")
        try:
            record = self.credentials.get(session_id, provider, account_id)
        except redis.RedisError as e:
            logger.error("Failed to read token for provider %s, account %s: %s", provider, account_id, e)
            raise StorageFailure("Failed to retrieve token") from e
        if record is None:
            logger.warning("Token not found for provider %s, account %s", provider, account_id)
            raise CredentialNotFound()
        return self.refresher.ensure_fresh(session_id, descriptor, record)

    def logout(self, provider: str, session_id: str | None, account_id: str | None = None) -> str:
        """Remove one account, or every account of the provider, from the session."""
        self._provider(provider)
        if not _usable_session_id(session_id):
            raise MissingSession()

        if account_id:
            try:
                self.credentials.delete(session_id, provider, account_id)
            except redis.RedisError as e:
                logger.error("Failed to log out account %s from provider %s: %s", account_id, provider, e)
                raise StorageFailure("Failed to log out user") from e
            logger.info("Logged out account %s from provider %s", account_id, provider)
            return f"Successfully logged out user {account_id} from provider {provider}"

        try:
            removed = self.credentials.delete_all(session_id, provider)
        except redis.RedisError as e:
            logger.error("Failed to log out all accounts from provider %s: %s", provider, e)
            raise StorageFailure("Failed to log out all users") from e
        logger.info("Logged out %s account(s) from provider %s", removed, provider)
        return f"Successfully logged out all users from provider {provider}"

    def status(self, session_id: str | None) -> list[dict]:
        """Provider accounts attached to the session; an empty list means none."""
        if not _usable_session_id(session_id):
            raise MissingSession(status_code=401)
        try:
            stored = self.credentials.list_by_session(session_id)
        except redis.RedisError as e:
            logger.error("Failed to list credentials for session %s...: %s", session_id[:8], e)
            raise StorageFailure("Failed to fetch login status") from e
        return [
            {
                "provider": c.provider,
                "user_id": c.account_id,
                "display_name": c.record.display_name,
                "email": c.record.email,
                "logged_in": True,
            }
            for c in stored
        ]

"""
Lazy token refresh: an expired credential is refreshed when it is read, never on a timer.
"""
import logging

import redis

from auth_broker import provider_client
from auth_broker.errors import ProviderError, RefreshFailed, StorageFailure
from auth_broker.providers import ProviderDescriptor
from auth_broker.token_store import CredentialRecord, CredentialStore

logger = logging.getLogger(__name__)


class TokenRefresher:
    def __init__(self, store: CredentialStore):
        self.store = store

    def ensure_fresh(
        self,
        session_id: str,
        descriptor: ProviderDescriptor,
        record: CredentialRecord,
    ) -> CredentialRecord:
        """
        Return record unchanged while its access token is valid. Otherwise run the refresh_token
        grant and overwrite the stored record with the new token material and the same identity.
        On refresh failure the stored record is left as it was.
        """
        if not record.expired():
            return record

        logger.info(
            "Token expired for provider %s, account %s; refreshing",
            descriptor.name,
            record.account_id,
        )
        try:
            tokens = provider_client.refresh_access_token(descriptor, record.refresh_token)
        except ProviderError as e:
            logger.error("Failed to refresh token for provider %s, account %s: %s", descriptor.name, record.account_id, e)
            raise RefreshFailed(f"Failed to refresh token: {e}") from e

        refreshed = CredentialRecord(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expiry=tokens.expiry,
            account_id=record.account_id,
            display_name=record.display_name,
            email=record.email,
        )
        try:
            self.store.put(session_id, descriptor.name, refreshed)
        except redis.RedisError as e:
            logger.error("Failed to store refreshed token for provider %s: %s", descriptor.name, e)
            raise StorageFailure("Failed to store refreshed token") from e

        logger.info("Refreshed token for provider %s, account %s", descriptor.name, record.account_id)
        return refreshed

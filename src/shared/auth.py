"""Credential providers.

Every remote call made by the orchestrators and the knowledge base client
first obtains transient AWS credentials from a provider. Providers are
asynchronous; blocking boto3 work runs in a worker thread.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from shared.config import AWSSettings
from shared.errors import AuthError
from shared.logging import get_logger
from shared.models import AWSCredentials

logger = get_logger(__name__)

# Refresh cached Cognito credentials this long before they expire
EXPIRY_MARGIN = timedelta(minutes=5)


class CredentialProvider(ABC):
    """Source of transient AWS credentials."""

    @abstractmethod
    async def fetch_session(self) -> AWSCredentials:
        """
        Obtain credentials for the current session.

        Raises:
            AuthError: If credentials cannot be acquired
        """
        pass


class StaticCredentialProvider(CredentialProvider):
    """Returns a fixed set of credentials."""

    def __init__(self, credentials: AWSCredentials) -> None:
        self._credentials = credentials

    async def fetch_session(self) -> AWSCredentials:
        return self._credentials


class Boto3CredentialProvider(CredentialProvider):
    """Resolves credentials through the default boto3 credential chain."""

    def __init__(self, region: str, profile_name: Optional[str] = None) -> None:
        self.region = region
        self.profile_name = profile_name

    def _resolve(self) -> AWSCredentials:
        session = boto3.Session(profile_name=self.profile_name, region_name=self.region)
        credentials = session.get_credentials()
        if credentials is None:
            raise AuthError("No AWS credentials found in the boto3 credential chain")

        frozen = credentials.get_frozen_credentials()
        return AWSCredentials(
            access_key_id=frozen.access_key,
            secret_access_key=frozen.secret_key,
            session_token=frozen.token,
        )

    async def fetch_session(self) -> AWSCredentials:
        try:
            return await asyncio.to_thread(self._resolve)
        except (BotoCoreError, ClientError) as e:
            logger.error("Credential resolution failed", profile=self.profile_name, error=str(e))
            raise AuthError(f"Failed to resolve AWS credentials: {e}") from e


class CognitoCredentialProvider(CredentialProvider):
    """
    Exchanges a Cognito identity pool identity for AWS credentials.

    This is the path a browser front-end takes; credentials are cached
    until shortly before they expire.
    """

    def __init__(
        self,
        identity_pool_id: str,
        region: str,
        logins: Optional[dict[str, str]] = None,
        client=None
    ) -> None:
        self.identity_pool_id = identity_pool_id
        self.region = region
        self.logins = logins or {}
        self._client = client
        self._identity_id: Optional[str] = None
        self._cached: Optional[AWSCredentials] = None
        self._lock = asyncio.Lock()

    def _get_client(self):
        if self._client is None:
            self._client = boto3.client("cognito-identity", region_name=self.region)
        return self._client

    def _is_cache_valid(self) -> bool:
        if self._cached is None or self._cached.expiration is None:
            return False
        return datetime.now(timezone.utc) + EXPIRY_MARGIN < self._cached.expiration

    def _exchange(self) -> AWSCredentials:
        client = self._get_client()

        if self._identity_id is None:
            params = {"IdentityPoolId": self.identity_pool_id}
            if self.logins:
                params["Logins"] = self.logins
            self._identity_id = client.get_id(**params)["IdentityId"]

        params = {"IdentityId": self._identity_id}
        if self.logins:
            params["Logins"] = self.logins
        raw = client.get_credentials_for_identity(**params)["Credentials"]

        expiration = raw.get("Expiration")
        if expiration is not None and expiration.tzinfo is None:
            expiration = expiration.replace(tzinfo=timezone.utc)

        return AWSCredentials(
            access_key_id=raw["AccessKeyId"],
            secret_access_key=raw["SecretKey"],
            session_token=raw.get("SessionToken"),
            expiration=expiration,
        )

    async def fetch_session(self) -> AWSCredentials:
        async with self._lock:
            if self._is_cache_valid():
                return self._cached

            try:
                self._cached = await asyncio.to_thread(self._exchange)
            except (BotoCoreError, ClientError, KeyError) as e:
                logger.error(
                    "Cognito credential exchange failed",
                    identity_pool_id=self.identity_pool_id,
                    error=str(e)
                )
                raise AuthError(f"Failed to obtain Cognito credentials: {e}") from e

            logger.debug("Cognito credentials refreshed", expiration=self._cached.expiration)
            return self._cached


def create_credential_provider(settings: AWSSettings) -> CredentialProvider:
    """
    Factory function to create the configured credential provider.

    Supports:
    - boto3: default boto3 credential chain
    - cognito: Cognito identity pool (requires identity_pool_id)
    - static: access keys from configuration

    Raises:
        ValueError: If the provider is not supported or misconfigured
    """
    name = settings.credential_provider

    if name == "boto3":
        return Boto3CredentialProvider(settings.region, settings.profile_name)

    if name == "cognito":
        if not settings.identity_pool_id:
            raise ValueError("The cognito credential provider requires identity_pool_id")
        return CognitoCredentialProvider(settings.identity_pool_id, settings.region)

    if name == "static":
        if not settings.access_key_id or not settings.secret_access_key:
            raise ValueError("The static credential provider requires access keys")
        return StaticCredentialProvider(AWSCredentials(
            access_key_id=settings.access_key_id,
            secret_access_key=settings.secret_access_key,
            session_token=settings.session_token,
        ))

    raise ValueError(
        f"Unsupported credential provider: {name}. "
        f"Supported: ['boto3', 'cognito', 'static']"
    )

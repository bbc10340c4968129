"""
Cloud Sessions - Region-bound AWS sessions for reconcile scopes.

Sessions are built fresh for every scope: credentials may rotate between
reconciles, so nothing is cached across calls. Building a session performs
no network I/O; API clients are created lazily through the handle.
"""

import base64
import binascii
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set

import boto3
from botocore.exceptions import BotoCoreError

from errors import ConfigurationError, CredentialError, NotFoundError
from resources import GenericResource, ResourceRef

logger = logging.getLogger(__name__)

ACCESS_KEY_ID_ENV = "AWS_ACCESS_KEY_ID"
SECRET_ACCESS_KEY_ENV = "AWS_SECRET_ACCESS_KEY"

# Keys of a credentials Secret
SECRET_ACCESS_KEY_ID = "aws_access_key_id"
SECRET_SECRET_ACCESS_KEY = "aws_secret_access_key"


@dataclass(frozen=True)
class ServiceEndpoint:
    """Override of the API endpoint used for one AWS service."""

    service_id: str
    url: str
    signing_region: str = ""


@dataclass(frozen=True)
class Credentials:
    """A static access key pair and where it came from."""

    access_key_id: str
    secret_access_key: str = field(repr=False)
    source: str = "environment"


def parse_endpoints(value: str) -> List[ServiceEndpoint]:
    """
    Parse endpoint overrides of the form ``service=url[,service=url...]``.

    Raises:
        ConfigurationError: If an entry is not a service=url pair
    """
    endpoints = []
    for entry in (part.strip() for part in value.split(",")):
        if not entry:
            continue
        service, sep, url = entry.partition("=")
        if not sep or not service.strip() or not url.strip():
            raise ConfigurationError(f"invalid service endpoint override: {entry!r}")
        endpoints.append(ServiceEndpoint(service_id=service.strip(), url=url.strip()))
    return endpoints


def known_regions() -> Set[str]:
    """Return every region botocore knows, across all partitions."""
    session = boto3.session.Session()
    regions: Set[str] = set()
    for partition in session.get_available_partitions():
        regions.update(session.get_available_regions("ec2", partition_name=partition))
    return regions


def credentials_from_secret(secret: GenericResource) -> Optional[Credentials]:
    """
    Read an access key pair from a Secret's base64-encoded data.

    Returns:
        The credentials, or None if either key is missing or undecodable
    """
    values: Dict[str, str] = {}
    for key in (SECRET_ACCESS_KEY_ID, SECRET_SECRET_ACCESS_KEY):
        encoded = secret.data.get(key)
        if not encoded:
            return None
        try:
            values[key] = base64.b64decode(encoded, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            logger.warning(f"{secret.ref} key {key} is not valid base64")
            return None

    return Credentials(
        access_key_id=values[SECRET_ACCESS_KEY_ID],
        secret_access_key=values[SECRET_SECRET_ACCESS_KEY],
        source=f"secret {secret.metadata.namespace}/{secret.metadata.name}",
    )


class SessionHandle:
    """An authenticated, region-bound session used to build API clients."""

    def __init__(
        self,
        session: boto3.session.Session,
        region: str,
        endpoints: Sequence[ServiceEndpoint] = (),
        credential_source: str = "environment",
    ):
        self._session = session
        self.region = region
        self.endpoints = tuple(endpoints)
        self.credential_source = credential_source

    def endpoint_for(self, service_name: str) -> Optional[ServiceEndpoint]:
        for endpoint in self.endpoints:
            if endpoint.service_id == service_name:
                return endpoint
        return None

    def client(self, service_name: str, **kwargs: Any) -> Any:
        """Create a boto3 client, honouring any endpoint override."""
        endpoint = self.endpoint_for(service_name)
        if endpoint is not None:
            kwargs.setdefault("endpoint_url", endpoint.url)
            if endpoint.signing_region:
                kwargs.setdefault("region_name", endpoint.signing_region)
        return self._session.client(service_name, **kwargs)


class SessionFactory:
    """
    Creates session handles for a region.

    Credentials come from the referenced Secret when it resolves to a full
    key pair, otherwise from the process environment.
    """

    def __init__(
        self,
        store: Optional[Any] = None,
        environ: Optional[Mapping[str, str]] = None,
    ):
        self._store = store
        self._environ = environ

    async def new_session(
        self,
        region: str,
        endpoints: Optional[Sequence[ServiceEndpoint]] = None,
        credentials_secret: Optional[ResourceRef] = None,
    ) -> SessionHandle:
        """
        Build a session handle for ``region``.

        Raises:
            ConfigurationError: If the region is empty or unknown
            CredentialError: If no credential source is usable
        """
        if not region:
            raise ConfigurationError("region must not be empty")
        if region not in known_regions():
            raise ConfigurationError(f"unknown AWS region {region!r}")

        credentials = await self.resolve_credentials(credentials_secret)

        try:
            session = boto3.session.Session(
                aws_access_key_id=credentials.access_key_id,
                aws_secret_access_key=credentials.secret_access_key,
                region_name=region,
            )
        except BotoCoreError as e:
            raise ConfigurationError(
                f"failed to configure session for {region}: {e}"
            ) from e

        logger.debug(
            f"Created session for {region} using {credentials.source} credentials"
        )
        return SessionHandle(
            session,
            region,
            endpoints=endpoints or (),
            credential_source=credentials.source,
        )

    async def resolve_credentials(
        self, credentials_secret: Optional[ResourceRef] = None
    ) -> Credentials:
        """
        Resolve credentials at call time.

        Raises:
            CredentialError: If neither the secret nor the environment
                yields a key pair
        """
        if credentials_secret is not None and self._store is not None:
            try:
                secret = await self._store.get(credentials_secret)
            except NotFoundError:
                logger.warning(f"Credentials secret {credentials_secret} not found")
            else:
                credentials = credentials_from_secret(secret)
                if credentials is not None:
                    return credentials
                logger.warning(
                    f"Credentials secret {credentials_secret} is missing "
                    f"{SECRET_ACCESS_KEY_ID} or {SECRET_SECRET_ACCESS_KEY}"
                )

        environ = self._environ if self._environ is not None else os.environ
        access_key_id = environ.get(ACCESS_KEY_ID_ENV)
        secret_access_key = environ.get(SECRET_ACCESS_KEY_ENV)
        if access_key_id and secret_access_key:
            return Credentials(
                access_key_id=access_key_id,
                secret_access_key=secret_access_key,
                source="environment",
            )

        where = f" or secret {credentials_secret}" if credentials_secret else ""
        raise CredentialError(
            f"no AWS credentials found in {ACCESS_KEY_ID_ENV}/"
            f"{SECRET_ACCESS_KEY_ENV}{where}"
        )

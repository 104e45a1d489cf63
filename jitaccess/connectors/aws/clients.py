"""
boto3 client construction and botocore error classification.

Every client carries connect/read timeouts and standard-mode retries from
AwsSettings, so no cloud call can block a reconcile indefinitely.
"""

import threading
from typing import Callable

import boto3
from botocore.config import Config
from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from jitaccess.services.shared.config import AwsSettings

# botocore errors that mean "try again later" rather than "the call is wrong"
NETWORK_ERRORS = (
    EndpointConnectionError,
    ConnectTimeoutError,
    ReadTimeoutError,
    ConnectionClosedError,
)

TRANSIENT_CODES = frozenset({
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "TooManyRequestsException",
    "ServiceUnavailable",
    "ServiceUnavailableException",
    "ServerException",
    "InternalFailure",
    "InternalError",
    "RequestTimeout",
    "RequestTimeoutException",
    "IDPCommunicationError",
})


def error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "")


def error_message(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Message", "") or str(exc)


def boto_config(settings: AwsSettings) -> Config:
    return Config(
        connect_timeout=settings.connect_timeout.total_seconds(),
        read_timeout=settings.read_timeout.total_seconds(),
        retries={"max_attempts": settings.max_attempts, "mode": "standard"},
    )


def make_client(service: str, settings: AwsSettings, region: str = None):
    return boto3.client(
        service,
        region_name=region or settings.region,
        endpoint_url=settings.endpoint_url,
        config=boto_config(settings),
    )


class RegionalClients:
    """Lazily built clients of one service, one per region."""

    def __init__(self, service: str, settings: AwsSettings, factory: Callable = make_client):
        self._service = service
        self._settings = settings
        self._factory = factory
        self._clients: dict[str, object] = {}
        self._lock = threading.Lock()

    def __call__(self, region: str):
        with self._lock:
            client = self._clients.get(region)
            if client is None:
                client = self._factory(self._service, self._settings, region)
                self._clients[region] = client
            return client

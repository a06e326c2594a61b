"""CloudSigma REST API access: typed client, error taxonomy and per-resource locking."""

from capcs.cloud.errors import (
    CloudError,
    CloudAPIError,
    NotFoundError,
    PermissionDeniedError,
    TransientError,
)
from capcs.cloud.client import ClientFactory, CloudClient, ServerRequest

__all__ = [
    "ClientFactory",
    "CloudClient",
    "ServerRequest",
    "CloudError",
    "CloudAPIError",
    "NotFoundError",
    "PermissionDeniedError",
    "TransientError",
]

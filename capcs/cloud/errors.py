"""Error taxonomy for the cloud API."""

from __future__ import annotations

from typing import Optional


class CloudError(Exception):
    """Base error for cloud API calls."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        resource_type: str = "",
        uuid: str = "",
    ):
        self.message = message
        self.status_code = status_code
        self.resource_type = resource_type
        self.uuid = uuid
        super().__init__(self.message)

    def __str__(self):
        return self.message


class NotFoundError(CloudError):
    """The external resource does not exist."""

    def __init__(self, resource_type: str, uuid: str, message: Optional[str] = None):
        super().__init__(
            message=message or f"{resource_type} {uuid} not found",
            status_code=404,
            resource_type=resource_type,
            uuid=uuid,
        )


class PermissionDeniedError(CloudError):
    """The resource exists but the active identity cannot access it."""

    def __init__(self, resource_type: str, uuid: str, user: str = "", message: Optional[str] = None):
        self.user = user
        who = f" for user {user}" if user else ""
        super().__init__(
            message=message or f"permission denied accessing {resource_type} {uuid}{who}",
            status_code=403,
            resource_type=resource_type,
            uuid=uuid,
        )


class TransientError(CloudError):
    """Network failure, throttling or a server-side error; safe to retry."""


class CloudAPIError(CloudError):
    """Any other rejected request (validation, illegal state transitions)."""


class TimeoutExceeded(CloudError):
    """A bounded wait for a resource state transition ran out."""


RETRYABLE_STATUS = {408, 429, 500, 502, 503, 504}


def error_for_status(
    status_code: int,
    body: str,
    resource_type: str = "",
    uuid: str = "",
    user: str = "",
) -> CloudError:
    """Map an HTTP error response onto the taxonomy."""
    detail = (body or "").strip()[:500]
    if status_code == 404:
        return NotFoundError(resource_type, uuid)
    if status_code == 403:
        return PermissionDeniedError(resource_type, uuid, user=user)
    if status_code in RETRYABLE_STATUS or status_code >= 500:
        return TransientError(
            f"cloud API returned {status_code}: {detail}",
            status_code=status_code,
            resource_type=resource_type,
            uuid=uuid,
        )
    return CloudAPIError(
        f"cloud API returned {status_code}: {detail}",
        status_code=status_code,
        resource_type=resource_type,
        uuid=uuid,
    )

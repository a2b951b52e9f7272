"""
Exceptions for the Vagrant Cloud client.

Registry failures carry the HTTP status and the registry's own error text.
Workflow failures carry the publish state that was reached so callers can
resume at the right granularity.
"""

from typing import List, Optional


class VagrantCloudError(Exception):
    """Base error for everything raised by vagabond."""

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class RemoteError(VagrantCloudError):
    """The registry answered with an error status."""

    def __init__(self, message: str = "", status_code: Optional[int] = None, endpoint: Optional[str] = None):
        self.status_code = status_code
        self.endpoint = endpoint
        if status_code is not None:
            text = f"Request failed with status {status_code}: {message}"
        else:
            text = message
        super().__init__(text)
        self.message = message


class NotFoundError(RemoteError):
    """Box, version or provider does not exist."""


class ConflictError(RemoteError):
    """Resource already exists."""


class InvalidStateError(RemoteError):
    """The registry refused the operation in the resource's current state."""


class AuthenticationError(RemoteError):
    """Token missing, invalid or lacking permission."""


class SchemaMismatchError(VagrantCloudError):
    """A registry reply did not have the expected JSON shape."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class NetworkError(VagrantCloudError):
    """Communication failed for an external reason (DNS, refused, reset)."""

    def __init__(self, message: str, url: Optional[str] = None, original_exception: Optional[Exception] = None):
        super().__init__(message)
        self.url = url
        self.original_exception = original_exception


class CloudTimeoutError(NetworkError):
    """A request or the overall publish deadline timed out."""


class TicketConsumedError(VagrantCloudError):
    """An upload ticket was used more than once."""


class EnvironmentValidationError(VagrantCloudError):
    """Configuration could not be built from the environment."""

    def __init__(self, message: str, missing_vars: Optional[List[str]] = None):
        super().__init__(message)
        self.missing_vars = missing_vars or []


class FileValidationError(VagrantCloudError):
    """The local box artifact cannot be uploaded."""

    def __init__(self, message: str, file_path: Optional[str] = None):
        super().__init__(message)
        self.file_path = file_path


class PublishError(VagrantCloudError):
    """The publish workflow stopped before finishing."""

    def __init__(self, message: str, state_reached=None, cause: Optional[Exception] = None):
        super().__init__(message)
        self.state_reached = state_reached
        self.cause = cause

    def __str__(self):
        state = getattr(self.state_reached, "value", self.state_reached)
        if state is None:
            return self.message
        return f"{self.message} (reached state: {state})"


class AlreadyReleasedError(PublishError):
    """The target version is already released or revoked."""


class ProviderExistsError(PublishError):
    """A different artifact is already bound to the provider."""


class UploadFailedError(PublishError):
    """Streaming the artifact failed on every attempt."""

    def __init__(self, message: str, state_reached=None, cause: Optional[Exception] = None, attempts: int = 0):
        super().__init__(message, state_reached=state_reached, cause=cause)
        self.attempts = attempts

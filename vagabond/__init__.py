"""
vagabond - a client for the Vagrant Cloud box registry

Publishes box files to Vagrant Cloud through its API:

1. Ensure the box exists (creating it if needed)
2. Ensure the version exists in the unreleased state
3. Ensure the provider exists
4. Upload the box file through a single-use upload ticket
5. Optionally release the version

Logging goes through the standard ``logging`` module; the API token is never
logged.
"""

from typing import Optional

from rich.console import Console

from .api_client import VagrantCloudClient
from .environment_detector import CloudEnvironmentDetector
from .exceptions import (
    AlreadyReleasedError,
    AuthenticationError,
    CloudTimeoutError,
    ConflictError,
    EnvironmentValidationError,
    FileValidationError,
    InvalidStateError,
    NetworkError,
    NotFoundError,
    ProviderExistsError,
    PublishError,
    RemoteError,
    SchemaMismatchError,
    TicketConsumedError,
    UploadFailedError,
    VagrantCloudError,
)
from .models import (
    BoxProvider,
    BoxVersion,
    CloudConfig,
    Deadline,
    PublishOutcome,
    PublishState,
    UploadTicket,
    VagrantBox,
    VersionStatus,
)
from .transport import HttpTransport, Transport, TransportResponse
from .upload_orchestrator import PublishOrchestrator


class VagrantCloudPublisher:
    """Main interface: builds the client stack from config or environment"""

    def __init__(
        self,
        config: Optional[CloudConfig] = None,
        transport: Optional[Transport] = None,
        console: Optional[Console] = None
    ):
        self.detector = CloudEnvironmentDetector()
        self.config = config or self.detector.get_cloud_config()
        self.client = VagrantCloudClient(self.config, transport=transport)
        self.orchestrator = PublishOrchestrator(self.client, console=console)

    def publish(
        self,
        username: str,
        box_name: str,
        version: str,
        provider: str,
        local_path: Optional[str] = None,
        release: bool = False,
        deadline: Optional[float] = None,
        **options
    ) -> PublishOutcome:
        """Publish with plain identifiers; see PublishOrchestrator.publish"""
        return self.orchestrator.publish(
            VagrantBox(username=username, name=box_name),
            BoxVersion(version=version),
            BoxProvider(name=provider, architecture=options.pop("architecture", None), url=options.pop("url", None)),
            local_path=local_path,
            release=release,
            deadline=deadline,
            **options
        )

    def close(self):
        self.client.transport.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


__all__ = [
    "VagrantCloudPublisher",
    "PublishOrchestrator",
    "VagrantCloudClient",
    "CloudEnvironmentDetector",
    "Transport",
    "HttpTransport",
    "TransportResponse",
    "CloudConfig",
    "Deadline",
    "VagrantBox",
    "BoxVersion",
    "BoxProvider",
    "UploadTicket",
    "VersionStatus",
    "PublishState",
    "PublishOutcome",
    "VagrantCloudError",
    "RemoteError",
    "NotFoundError",
    "ConflictError",
    "InvalidStateError",
    "AuthenticationError",
    "SchemaMismatchError",
    "NetworkError",
    "CloudTimeoutError",
    "TicketConsumedError",
    "EnvironmentValidationError",
    "FileValidationError",
    "PublishError",
    "AlreadyReleasedError",
    "ProviderExistsError",
    "UploadFailedError",
]

"""
Vagrant Cloud API Client

One method per registry capability, each performing exactly one Transport
call. Nothing here retries: the publish workflow decides which steps are
safe to repeat.
"""

import logging
import os
from typing import Any, Callable, Optional, BinaryIO
from urllib.parse import quote, urljoin

from .exceptions import (
    AuthenticationError,
    ConflictError,
    InvalidStateError,
    NotFoundError,
    RemoteError,
    SchemaMismatchError,
)
from .models import BoxProvider, BoxVersion, CloudConfig, UploadTicket, VagrantBox
from .transport import HttpTransport, Transport, TransportResponse
from .utils.api_error_handler import redact_url


class VagrantCloudClient:
    """Handles all API interactions with Vagrant Cloud"""

    def __init__(self, config: CloudConfig, transport: Optional[Transport] = None):
        self.config = config
        self.transport = transport or HttpTransport(config)
        self.base_url = config.api_url.rstrip("/") + "/"
        self.logger = logging.getLogger(self.__class__.__name__)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.transport.close()

    # Boxes

    def get_box(self, box: VagrantBox, timeout: Optional[float] = None) -> VagrantBox:
        """GET /box/:username/:name"""
        data = self._call("GET", self._box_path(box), timeout=timeout)
        return VagrantBox.from_api(data)

    def create_box(self, box: VagrantBox, timeout: Optional[float] = None) -> VagrantBox:
        """POST /boxes"""
        data = self._call("POST", "boxes", payload=box.to_api_payload(), timeout=timeout)
        return VagrantBox.from_api(data)

    def update_box(self, box: VagrantBox, timeout: Optional[float] = None) -> VagrantBox:
        """PUT /box/:username/:name"""
        data = self._call("PUT", self._box_path(box), payload=box.to_api_payload(), timeout=timeout)
        return VagrantBox.from_api(data)

    def delete_box(self, box: VagrantBox, timeout: Optional[float] = None):
        """DELETE /box/:username/:name"""
        self._call("DELETE", self._box_path(box), timeout=timeout)

    # Versions

    def get_version(self, box: VagrantBox, version: BoxVersion, timeout: Optional[float] = None) -> BoxVersion:
        """GET /box/:username/:name/version/:version"""
        data = self._call("GET", self._version_path(box, version), timeout=timeout)
        return BoxVersion.from_api(data)

    def create_version(self, box: VagrantBox, version: BoxVersion, timeout: Optional[float] = None) -> BoxVersion:
        """POST /box/:username/:name/versions"""
        endpoint = f"{self._box_path(box)}/versions"
        data = self._call("POST", endpoint, payload=version.to_api_payload(), timeout=timeout)
        return BoxVersion.from_api(data)

    def update_version(self, box: VagrantBox, version: BoxVersion, timeout: Optional[float] = None) -> BoxVersion:
        """PUT /box/:username/:name/version/:version"""
        endpoint = self._version_path(box, version)
        data = self._call("PUT", endpoint, payload=version.to_api_payload(), timeout=timeout)
        return BoxVersion.from_api(data)

    def release_version(self, box: VagrantBox, version: BoxVersion, timeout: Optional[float] = None) -> BoxVersion:
        """PUT /box/:username/:name/version/:version/release

        Raises InvalidStateError when a provider of the version has no
        confirmed upload.
        """
        endpoint = f"{self._version_path(box, version)}/release"
        data = self._call("PUT", endpoint, timeout=timeout, state_change=True)
        return BoxVersion.from_api(data)

    def revoke_version(self, box: VagrantBox, version: BoxVersion, timeout: Optional[float] = None) -> BoxVersion:
        """PUT /box/:username/:name/version/:version/revoke"""
        endpoint = f"{self._version_path(box, version)}/revoke"
        data = self._call("PUT", endpoint, timeout=timeout, state_change=True)
        return BoxVersion.from_api(data)

    def delete_version(self, box: VagrantBox, version: BoxVersion, timeout: Optional[float] = None):
        """DELETE /box/:username/:name/version/:version"""
        self._call("DELETE", self._version_path(box, version), timeout=timeout)

    # Providers

    def get_provider(
        self, box: VagrantBox, version: BoxVersion, provider: BoxProvider, timeout: Optional[float] = None
    ) -> BoxProvider:
        """GET /box/:username/:name/version/:version/provider/:provider[/:architecture]"""
        data = self._call("GET", self._provider_path(box, version, provider), timeout=timeout)
        return BoxProvider.from_api(data)

    def create_provider(
        self, box: VagrantBox, version: BoxVersion, provider: BoxProvider, timeout: Optional[float] = None
    ) -> BoxProvider:
        """POST /box/:username/:name/version/:version/providers

        The box and version must already exist.
        """
        endpoint = f"{self._version_path(box, version)}/providers"
        data = self._call("POST", endpoint, payload=provider.to_api_payload(), timeout=timeout)
        return BoxProvider.from_api(data)

    def update_provider(
        self, box: VagrantBox, version: BoxVersion, provider: BoxProvider, timeout: Optional[float] = None
    ) -> BoxProvider:
        """PUT /box/:username/:name/version/:version/provider/:provider[/:architecture]"""
        endpoint = self._provider_path(box, version, provider)
        data = self._call("PUT", endpoint, payload=provider.to_api_payload(), timeout=timeout)
        return BoxProvider.from_api(data)

    def delete_provider(
        self, box: VagrantBox, version: BoxVersion, provider: BoxProvider, timeout: Optional[float] = None
    ):
        """DELETE the provider, leaving the version and box untouched"""
        self._call("DELETE", self._provider_path(box, version, provider), timeout=timeout)

    # Uploads

    def get_upload_ticket(
        self, box: VagrantBox, version: BoxVersion, provider: BoxProvider, timeout: Optional[float] = None
    ) -> UploadTicket:
        """GET .../provider/:provider/upload (or upload/direct)

        Every call returns a brand-new single-use ticket.
        """
        endpoint = f"{self._provider_path(box, version, provider)}/upload"
        if self.config.direct_upload:
            endpoint += "/direct"
        data = self._call("GET", endpoint, timeout=timeout)
        return UploadTicket.from_api(data)

    def upload_artifact(
        self,
        ticket: UploadTicket,
        file_path: str,
        wrap_stream: Optional[Callable[[BinaryIO], BinaryIO]] = None,
        timeout: Optional[float] = None
    ) -> TransportResponse:
        """Stream a box file to the ticket's target.

        The ticket is consumed even if the transfer fails. The file is opened
        from offset 0 on every call and the registry token is not sent.
        """
        method, url = ticket.consume()
        size = os.path.getsize(file_path)
        headers = {
            "Content-Type": "application/octet-stream",
            "Content-Length": str(size)
        }
        self.logger.debug(f"Streaming {size} bytes to {redact_url(url)}")

        with open(file_path, "rb") as f:
            body = wrap_stream(f) if wrap_stream else f
            response = self.transport.request(
                method,
                url,
                data=body,
                headers=headers,
                authenticate=False,
                timeout=timeout or self.config.upload_timeout
            )

        self._handle_response_errors(response, redact_url(url))
        return response

    def confirm_upload(self, ticket: UploadTicket, timeout: Optional[float] = None):
        """PUT the ticket's callback; only direct-to-storage uploads have one"""
        if not ticket.callback:
            return
        response = self.transport.request(
            "PUT",
            ticket.callback,
            timeout=timeout or self.config.request_timeout
        )
        self._handle_response_errors(response, redact_url(ticket.callback))

    # Internals

    def _box_path(self, box: VagrantBox) -> str:
        return f"box/{quote(box.username, safe='')}/{quote(box.name, safe='')}"

    def _version_path(self, box: VagrantBox, version: BoxVersion) -> str:
        return f"{self._box_path(box)}/version/{quote(version.version, safe='')}"

    def _provider_path(self, box: VagrantBox, version: BoxVersion, provider: BoxProvider) -> str:
        path = f"{self._version_path(box, version)}/provider/{quote(provider.name, safe='')}"
        if provider.architecture:
            path += f"/{quote(provider.architecture, safe='')}"
        return path

    def _call(
        self,
        method: str,
        endpoint: str,
        payload: Optional[dict] = None,
        timeout: Optional[float] = None,
        state_change: bool = False
    ) -> Any:
        url = urljoin(self.base_url, endpoint)
        response = self.transport.request(
            method,
            url,
            json=payload,
            timeout=timeout or self.config.request_timeout
        )
        self._handle_response_errors(response, endpoint, state_change=state_change)
        if method == "DELETE":
            return None

        data = response.json()
        if data is None:
            raise SchemaMismatchError(f"Empty response from {method} {endpoint}")
        return data

    def _handle_response_errors(self, response: TransportResponse, endpoint: str, state_change: bool = False):
        """Map error statuses to typed exceptions"""
        if response.ok:
            return

        status = response.status_code
        message = _error_message(response)
        self.logger.debug(f"{endpoint} failed with status {status}: {message}")

        if status in (401, 403):
            raise AuthenticationError(message, status_code=status, endpoint=endpoint)
        if status == 404:
            raise NotFoundError(message, status_code=status, endpoint=endpoint)
        if status == 409:
            raise ConflictError(message, status_code=status, endpoint=endpoint)
        if status == 422 or (state_change and status == 400):
            raise InvalidStateError(message, status_code=status, endpoint=endpoint)
        raise RemoteError(message, status_code=status, endpoint=endpoint)


def _error_message(response: TransportResponse) -> str:
    """Join the registry's ``errors`` list, or return an empty string"""
    try:
        data = response.json()
    except SchemaMismatchError:
        return ""
    if not isinstance(data, dict):
        return ""
    errors = data.get("errors")
    if not isinstance(errors, list):
        return ""
    messages = []
    for error in errors:
        if isinstance(error, dict):
            error = error.get("message", "")
        messages.append(str(error))
    return ", ".join(m for m in messages if m)

"""
HTTP transport for the Vagrant Cloud client.

The Transport interface is the only place network I/O happens, so the
resource client and publish workflow can be driven by a test double.
"""

import json as jsonlib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import requests

from .exceptions import SchemaMismatchError
from .models import CloudConfig
from .utils.api_error_handler import handle_transport_errors, redact_url


@dataclass
class TransportResponse:
    """Status code and raw body of one HTTP exchange"""
    status_code: int
    content: bytes = b""
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")

    def json(self) -> Any:
        """Decode the body, returning None for an empty body"""
        if not self.content or not self.content.strip():
            return None
        try:
            return jsonlib.loads(self.content)
        except ValueError as e:
            raise SchemaMismatchError(f"Response is not valid JSON: {self.text[:200]}") from e

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class Transport(ABC):
    """Abstract request/response capability used by the resource client."""

    @abstractmethod
    def request(
        self,
        method: str,
        url: str,
        json: Optional[Any] = None,
        data: Optional[Any] = None,
        headers: Optional[Dict[str, str]] = None,
        authenticate: bool = True,
        timeout: Optional[float] = None
    ) -> TransportResponse:
        """
        Perform one HTTP request.

        ``data`` may be a file object, which is streamed rather than buffered.
        With ``authenticate=False`` no registry credentials are attached.

        Raises:
            NetworkError: connection could not be made or was interrupted
            CloudTimeoutError: the request exceeded ``timeout``
        """
        pass

    def close(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class HttpTransport(Transport):
    """Transport backed by a pooled ``requests.Session``"""

    def __init__(self, config: CloudConfig, session: Optional[requests.Session] = None):
        self.config = config
        self.logger = logging.getLogger(self.__class__.__name__)
        # Credentials are added per request, never to the session, so ticket
        # uploads cannot pick them up.
        self.session = session or requests.Session()

    @handle_transport_errors("HTTP request")
    def request(
        self,
        method: str,
        url: str,
        json: Optional[Any] = None,
        data: Optional[Any] = None,
        headers: Optional[Dict[str, str]] = None,
        authenticate: bool = True,
        timeout: Optional[float] = None
    ) -> TransportResponse:
        request_headers: Dict[str, str] = {}
        if authenticate:
            request_headers.update(self.config.get_headers())
            if self.config.token:
                self.logger.debug("Passing Authorization token")
        if headers:
            request_headers.update(headers)

        self.logger.debug(f"Performing a {method} request to {redact_url(url)}")
        if json is not None:
            self.logger.debug(f"Sending the following payload: {jsonlib.dumps(json)}")

        response = self.session.request(
            method,
            url,
            json=json,
            data=data,
            headers=request_headers,
            timeout=timeout or self.config.request_timeout
        )

        self.logger.debug(f"Received status {response.status_code}")
        return TransportResponse(
            status_code=response.status_code,
            content=response.content or b"",
            headers=dict(response.headers)
        )

    def close(self):
        self.session.close()

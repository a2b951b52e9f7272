"""
Data models for the Vagrant Cloud registry.

Each entity decodes from the registry's JSON replies (raising
SchemaMismatchError on unexpected shapes) and encodes the narrower payload
the registry accepts on writes.
"""

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .exceptions import CloudTimeoutError, SchemaMismatchError, TicketConsumedError

DEFAULT_API_URL = "https://app.vagrantup.com/api/v1/"


def _require_mapping(data: Any, entity: str) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise SchemaMismatchError(f"Expected a JSON object for {entity}, got {type(data).__name__}")
    return data


def _get(data: Dict[str, Any], key: str, expected, entity: str, required: bool = False, default=None):
    """Fetch a typed field, treating JSON null like an absent field."""
    value = data.get(key)
    if value is None:
        if required:
            raise SchemaMismatchError(f"{entity} reply is missing required field '{key}'", field=key)
        return default
    if not isinstance(value, expected):
        raise SchemaMismatchError(
            f"{entity} field '{key}' has unexpected type {type(value).__name__}",
            field=key
        )
    return value


class VersionStatus(Enum):
    """Lifecycle status of a box version"""
    UNRELEASED = "unreleased"
    ACTIVE = "active"
    REVOKED = "revoked"

    @classmethod
    def parse(cls, value: str) -> "VersionStatus":
        try:
            return cls(value)
        except ValueError:
            raise SchemaMismatchError(f"Unknown version status '{value}'", field="status") from None


class PublishState(Enum):
    """States of the publish workflow, in order"""
    START = "start"
    BOX_ENSURED = "box_ensured"
    VERSION_ENSURED = "version_ensured"
    PROVIDER_ENSURED = "provider_ensured"
    TICKET_OBTAINED = "ticket_obtained"
    UPLOADING = "uploading"
    UPLOADED = "uploaded"
    RELEASED = "released"
    FAILED = "failed"


@dataclass
class CloudConfig:
    """Configuration for Vagrant Cloud API access"""
    api_url: str = DEFAULT_API_URL
    token: Optional[str] = None
    request_timeout: float = 30.0
    upload_timeout: float = 3600.0
    max_retries: int = 3
    max_upload_attempts: int = 3
    backoff_factor: float = 1.0
    chunk_size: int = 1024 * 1024
    direct_upload: bool = False

    def get_headers(self) -> Dict[str, str]:
        """Headers sent with every registry call (never with ticket uploads)"""
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json"
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def masked_token(self) -> Optional[str]:
        if not self.token:
            return None
        if len(self.token) <= 12:
            return "***"
        return f"{self.token[:8]}...{self.token[-4:]}"


@dataclass
class BoxProvider:
    """A per-backend artifact binding inside a version.

    ``url`` points at an externally hosted box file and is read back from the
    registry as ``original_url``. Hosted providers get ``download_url`` once
    their upload has been confirmed.
    """
    name: str
    architecture: Optional[str] = None
    url: Optional[str] = None
    checksum: Optional[str] = None
    checksum_type: Optional[str] = None
    hosted: Optional[bool] = None
    hosted_token: Optional[str] = None
    download_url: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_api(cls, data: Any) -> "BoxProvider":
        data = _require_mapping(data, "provider")
        return cls(
            name=_get(data, "name", str, "provider", required=True),
            architecture=_get(data, "architecture", str, "provider"),
            url=_get(data, "original_url", str, "provider"),
            checksum=_get(data, "checksum", str, "provider"),
            checksum_type=_get(data, "checksum_type", str, "provider"),
            hosted=_get(data, "hosted", bool, "provider"),
            hosted_token=_get(data, "hosted_token", str, "provider"),
            download_url=_get(data, "download_url", str, "provider"),
            created_at=_get(data, "created_at", str, "provider"),
            updated_at=_get(data, "updated_at", str, "provider"),
        )

    def to_api_payload(self) -> Dict[str, Any]:
        provider: Dict[str, Any] = {"name": self.name}
        if self.url:
            provider["url"] = self.url
        if self.checksum:
            provider["checksum"] = self.checksum
            provider["checksum_type"] = self.checksum_type or "sha256"
        if self.architecture:
            provider["architecture"] = self.architecture
        return {"provider": provider}

    @property
    def is_uploaded(self) -> bool:
        if self.url:
            return True
        return bool(self.hosted and self.download_url)

    def same_identity(self, other: "BoxProvider") -> bool:
        if self.name != other.name:
            return False
        if self.architecture is None or other.architecture is None:
            return True
        return self.architecture == other.architecture

    def same_artifact(self, other: "BoxProvider") -> bool:
        """True when ``other`` is bound to the artifact described by self"""
        if self.url:
            return self.url == other.url
        if not self.checksum or not other.checksum:
            return False
        same_type = (self.checksum_type or "sha256") == (other.checksum_type or "sha256")
        return same_type and self.checksum.lower() == other.checksum.lower()

    @property
    def label(self) -> str:
        if self.architecture:
            return f"{self.name}/{self.architecture}"
        return self.name


@dataclass
class BoxVersion:
    """A versioned snapshot of a box. ``version`` is opaque to the client."""
    version: str
    description: Optional[str] = None
    status: VersionStatus = VersionStatus.UNRELEASED
    description_html: Optional[str] = None
    number: Optional[str] = None
    release_url: Optional[str] = None
    revoke_url: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    providers: List[BoxProvider] = field(default_factory=list)

    @classmethod
    def from_api(cls, data: Any) -> "BoxVersion":
        data = _require_mapping(data, "version")
        providers = _get(data, "providers", list, "version", default=[])
        return cls(
            version=_get(data, "version", str, "version", required=True),
            description=_get(data, "description_markdown", str, "version"),
            status=VersionStatus.parse(_get(data, "status", str, "version", required=True)),
            description_html=_get(data, "description_html", str, "version"),
            number=_get(data, "number", str, "version"),
            release_url=_get(data, "release_url", str, "version"),
            revoke_url=_get(data, "revoke_url", str, "version"),
            created_at=_get(data, "created_at", str, "version"),
            updated_at=_get(data, "updated_at", str, "version"),
            providers=[BoxProvider.from_api(item) for item in providers],
        )

    def to_api_payload(self) -> Dict[str, Any]:
        version: Dict[str, Any] = {"version": self.version}
        if self.description is not None:
            version["description"] = self.description
        return {"version": version}

    def find_provider(self, provider: BoxProvider) -> Optional[BoxProvider]:
        for candidate in self.providers:
            if provider.same_identity(candidate):
                return candidate
        return None

    @property
    def is_released(self) -> bool:
        return self.status is VersionStatus.ACTIVE


@dataclass
class VagrantBox:
    """An owner-scoped box. ``(username, name)`` never changes."""
    username: str
    name: str
    short_description: Optional[str] = None
    description: Optional[str] = None
    is_private: Optional[bool] = None
    description_html: Optional[str] = None
    downloads: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    versions: List[BoxVersion] = field(default_factory=list)
    current_version: Optional[BoxVersion] = None

    @classmethod
    def from_api(cls, data: Any) -> "VagrantBox":
        data = _require_mapping(data, "box")
        versions = _get(data, "versions", list, "box", default=[])
        current = data.get("current_version")
        is_private = _get(data, "private", bool, "box")
        if is_private is None:
            is_private = _get(data, "is_private", bool, "box")
        return cls(
            username=_get(data, "username", str, "box", required=True),
            name=_get(data, "name", str, "box", required=True),
            short_description=_get(data, "short_description", str, "box"),
            description=_get(data, "description_markdown", str, "box"),
            is_private=is_private,
            description_html=_get(data, "description_html", str, "box"),
            downloads=_get(data, "downloads", int, "box", default=0),
            created_at=_get(data, "created_at", str, "box"),
            updated_at=_get(data, "updated_at", str, "box"),
            versions=[BoxVersion.from_api(item) for item in versions],
            current_version=BoxVersion.from_api(current) if current is not None else None,
        )

    def to_api_payload(self) -> Dict[str, Any]:
        box: Dict[str, Any] = {"username": self.username, "name": self.name}
        if self.short_description is not None:
            box["short_description"] = self.short_description
        if self.description is not None:
            box["description"] = self.description
        if self.is_private is not None:
            box["is_private"] = self.is_private
        return {"box": box}

    @property
    def tag(self) -> str:
        return f"{self.username}/{self.name}"

    def metadata_differs(self, remote: "VagrantBox") -> bool:
        """Compare only the metadata fields this instance sets"""
        wanted: Tuple[Tuple[Any, Any], ...] = (
            (self.short_description, remote.short_description),
            (self.description, remote.description),
            (self.is_private, remote.is_private),
        )
        return any(mine is not None and mine != theirs for mine, theirs in wanted)

    def find_version(self, version: str) -> Optional[BoxVersion]:
        for candidate in self.versions:
            if candidate.version == version:
                return candidate
        return None


@dataclass
class UploadTicket:
    """Single-use upload target handed out by the registry.

    The upload path embeds its own credential, so the registry token must not
    be sent with it. ``consume`` hands the target out exactly once.
    """
    upload_path: str
    token: Optional[str] = None
    callback: Optional[str] = None
    method: str = "PUT"
    _consumed: bool = field(default=False, init=False, repr=False, compare=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False, compare=False)

    @classmethod
    def from_api(cls, data: Any) -> "UploadTicket":
        data = _require_mapping(data, "upload ticket")
        token = _get(data, "upload_token", str, "upload ticket")
        if token is None:
            token = _get(data, "token", str, "upload ticket")
        return cls(
            upload_path=_get(data, "upload_path", str, "upload ticket", required=True),
            token=token,
            callback=_get(data, "callback", str, "upload ticket"),
        )

    def consume(self) -> Tuple[str, str]:
        """Return ``(method, url)`` and invalidate the ticket."""
        with self._lock:
            if self._consumed:
                raise TicketConsumedError("Upload ticket has already been used; request a new one")
            self._consumed = True
        return self.method, self.upload_path

    @property
    def consumed(self) -> bool:
        return self._consumed


@dataclass
class PublishOutcome:
    """Result of a successful publish call"""
    state: PublishState
    box: VagrantBox
    version: BoxVersion
    provider: BoxProvider
    released: bool = False
    release_error: Optional[Exception] = None
    upload_attempts: int = 0
    upload_skipped: bool = False
    pruned_versions: List[str] = field(default_factory=list)
    total_time_seconds: Optional[float] = None

    @property
    def success(self) -> bool:
        return True


class Deadline:
    """Monotonic time budget shared by every step of one publish call."""

    def __init__(self, seconds: Optional[float] = None, clock=time.monotonic):
        self.seconds = seconds
        self._clock = clock
        self._expires_at = None if seconds is None else clock() + seconds

    def remaining(self) -> Optional[float]:
        if self._expires_at is None:
            return None
        return max(self._expires_at - self._clock(), 0.0)

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def check(self):
        if self.expired:
            raise CloudTimeoutError(f"Publish deadline of {self.seconds}s exceeded")

    def timeout_for(self, default: float) -> float:
        """Per-request timeout, capped by what is left of the budget"""
        self.check()
        remaining = self.remaining()
        if remaining is None:
            return default
        return min(default, remaining)

"""
Shared fixtures: an in-memory Vagrant Cloud registry behind the Transport
interface, so the client and publish workflow run without a network.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import pytest
from rich.console import Console

from vagabond.api_client import VagrantCloudClient
from vagabond.exceptions import NetworkError
from vagabond.models import CloudConfig
from vagabond.transport import Transport, TransportResponse
from vagabond.upload_orchestrator import PublishOrchestrator

API_URL = "https://vagrantcloud.test/api/v1/"
STORAGE_URL = "https://storage.test/upload/"


@dataclass
class RecordedCall:
    method: str
    url: str
    payload: Optional[Any]
    headers: Dict[str, str]
    authenticate: bool

    @property
    def path(self) -> str:
        if self.url.startswith(API_URL):
            return self.url[len(API_URL):]
        return self.url


def _reply(status: int, body: Any = None) -> TransportResponse:
    content = b"" if body is None else json.dumps(body).encode("utf-8")
    return TransportResponse(status_code=status, content=content)


def _error(status: int, message: str) -> TransportResponse:
    return _reply(status, {"errors": [message], "success": False})


class FakeRegistry(Transport):
    """Minimal Vagrant Cloud: boxes, versions, providers, tickets, uploads"""

    def __init__(self):
        self.boxes: Dict[tuple, dict] = {}
        self.calls: List[RecordedCall] = []
        self.tickets: Dict[str, tuple] = {}
        self.issued_ticket_urls: List[str] = []
        self.uploads: List[tuple] = []
        self.fail_next_uploads = 0
        self.fail_next_requests = 0
        self.direct_callbacks: Dict[str, tuple] = {}
        # (method, path regex): processed by the registry, reply then lost
        self.lost_responses: List[tuple] = []
        self.on_upload_read = None
        self._ticket_counter = 0

    # Test helpers

    def add_box(self, username, name, **fields):
        box = {
            "username": username,
            "name": name,
            "tag": f"{username}/{name}",
            "private": False,
            "downloads": 0,
            "short_description": None,
            "description_markdown": None,
            "versions": [],
        }
        box.update(fields)
        self.boxes[(username, name)] = box
        return box

    def add_version(self, username, name, version, status="unreleased", description=None):
        entry = {
            "version": version,
            "number": version,
            "status": status,
            "description_markdown": description,
            "providers": [],
        }
        self.boxes[(username, name)]["versions"].append(entry)
        return entry

    def add_provider(self, username, name, version, provider, **fields):
        entry = {
            "name": provider,
            "architecture": None,
            "hosted": True,
            "hosted_token": None,
            "original_url": None,
            "download_url": None,
            "checksum": None,
            "checksum_type": None,
        }
        entry.update(fields)
        self._find_version(username, name, version)["providers"].append(entry)
        return entry

    def calls_matching(self, method: str, pattern: str) -> List[RecordedCall]:
        regex = re.compile(pattern)
        return [c for c in self.calls if c.method == method and regex.search(c.path)]

    def ticket_requests(self) -> List[RecordedCall]:
        return self.calls_matching("GET", r"/upload(/direct)?$")

    def upload_calls(self) -> List[RecordedCall]:
        return [c for c in self.calls if c.url.startswith(STORAGE_URL)]

    # Transport

    def request(self, method, url, json=None, data=None, headers=None, authenticate=True, timeout=None):
        self.calls.append(RecordedCall(method, url, json, dict(headers or {}), authenticate))

        if url.startswith(STORAGE_URL):
            return self._receive_upload(method, url, data)

        if self.fail_next_requests:
            self.fail_next_requests -= 1
            raise NetworkError("connection reset by peer", url=url)

        if not authenticate:
            return _error(401, "Authentication required")

        path = url[len(API_URL):]
        response = self._route(method, path, json)
        for lost in self.lost_responses:
            if lost[0] == method and re.search(lost[1], path):
                self.lost_responses.remove(lost)
                raise NetworkError("connection reset before response", url=url)
        return response

    def _route(self, method, path, payload):
        if path == "boxes" and method == "POST":
            return self._create_box(payload["box"])

        m = re.fullmatch(r"box/([^/]+)/([^/]+)(?:/(.*))?", path)
        if not m:
            if re.fullmatch(r"callbacks/[^/]+", path) and method == "PUT":
                return self._callback(path)
            return _error(404, "Resource not found!")

        username, name, rest = m.group(1), m.group(2), m.group(3)
        box = self.boxes.get((username, name))
        if box is None:
            return _error(404, "Resource not found!")

        if rest is None:
            if method == "GET":
                return _reply(200, box)
            if method == "PUT":
                fields = payload["box"]
                if "short_description" in fields:
                    box["short_description"] = fields["short_description"]
                if "description" in fields:
                    box["description_markdown"] = fields["description"]
                if "is_private" in fields:
                    box["private"] = fields["is_private"]
                return _reply(200, box)
            if method == "DELETE":
                del self.boxes[(username, name)]
                return _reply(200, box)

        if rest == "versions" and method == "POST":
            return self._create_version(box, payload["version"])

        m = re.fullmatch(r"version/([^/]+)(?:/(.*))?", rest)
        if not m:
            return _error(404, "Resource not found!")
        version = self._find_version(username, name, m.group(1))
        if version is None:
            return _error(404, "Resource not found!")
        return self._route_version(method, box, version, m.group(2), payload)

    def _route_version(self, method, box, version, rest, payload):
        if rest is None:
            if method == "GET":
                return _reply(200, version)
            if method == "PUT":
                version["description_markdown"] = payload["version"].get("description")
                return _reply(200, version)
            if method == "DELETE":
                box["versions"].remove(version)
                return _reply(200, version)

        if rest == "release" and method == "PUT":
            pending = [p for p in version["providers"] if not (p["original_url"] or p["download_url"])]
            if not version["providers"] or pending:
                return _error(422, "All providers must be uploaded before release")
            version["status"] = "active"
            return _reply(200, version)

        if rest == "revoke" and method == "PUT":
            version["status"] = "revoked"
            return _reply(200, version)

        if rest == "providers" and method == "POST":
            return self._create_provider(version, payload["provider"])

        m = re.fullmatch(r"provider/([^/]+)(?:/([^/]+))?(/upload(?:/direct)?)?", rest)
        if not m:
            return _error(404, "Resource not found!")
        name, arch, upload = m.group(1), m.group(2), m.group(3)
        if arch in ("upload",):
            arch, upload = None, "/upload" + (upload or "")
        provider = next(
            (p for p in version["providers"] if p["name"] == name and (arch is None or p["architecture"] == arch)),
            None
        )
        if provider is None:
            return _error(404, "Resource not found!")

        if upload and method == "GET":
            return self._issue_ticket(box, version, provider, direct=upload.endswith("/direct"))
        if method == "GET":
            return _reply(200, provider)
        if method == "PUT":
            fields = payload["provider"]
            provider["original_url"] = fields.get("url", provider["original_url"])
            provider["checksum"] = fields.get("checksum", provider["checksum"])
            provider["checksum_type"] = fields.get("checksum_type", provider["checksum_type"])
            return _reply(200, provider)
        if method == "DELETE":
            version["providers"].remove(provider)
            return _reply(200, provider)
        return _error(404, "Resource not found!")

    def _create_box(self, fields):
        key = (fields["username"], fields["name"])
        if key in self.boxes:
            return _error(409, "Type has already been taken")
        box = self.add_box(
            key[0],
            key[1],
            short_description=fields.get("short_description"),
            description_markdown=fields.get("description"),
            private=fields.get("is_private", False),
        )
        return _reply(201, box)

    def _create_version(self, box, fields):
        if any(v["version"] == fields["version"] for v in box["versions"]):
            return _error(409, "Version has already been taken")
        entry = self.add_version(box["username"], box["name"], fields["version"], description=fields.get("description"))
        return _reply(201, entry)

    def _create_provider(self, version, fields):
        if any(p["name"] == fields["name"] and p["architecture"] == fields.get("architecture")
               for p in version["providers"]):
            return _error(409, "Provider has already been taken")
        entry = {
            "name": fields["name"],
            "architecture": fields.get("architecture"),
            "hosted": not fields.get("url"),
            "hosted_token": None,
            "original_url": fields.get("url"),
            "download_url": fields.get("url"),
            "checksum": fields.get("checksum"),
            "checksum_type": fields.get("checksum_type"),
        }
        version["providers"].append(entry)
        return _reply(201, entry)

    def _issue_ticket(self, box, version, provider, direct=False):
        self._ticket_counter += 1
        token = f"tkt{self._ticket_counter}"
        url = f"{STORAGE_URL}{token}?signature=s3cr3t{self._ticket_counter}"
        self.tickets[url] = (box, version, provider, direct)
        self.issued_ticket_urls.append(url)
        body = {"upload_path": url, "token": token}
        if direct:
            callback = f"{API_URL}callbacks/{token}"
            self.direct_callbacks[callback[len(API_URL):]] = (box, version, provider)
            body["callback"] = callback
        return _reply(200, body)

    def _receive_upload(self, method, url, data):
        body = self._read_body(data)
        if self.fail_next_uploads:
            self.fail_next_uploads -= 1
            raise NetworkError("connection reset during upload", url=url)
        ticket = self.tickets.pop(url, None)
        if ticket is None:
            return _reply(403, None)
        box, version, provider, direct = ticket
        self.uploads.append((url, body))
        if not direct:
            self._mark_uploaded(box, version, provider)
        return _reply(200, None)

    def _read_body(self, data):
        if not hasattr(data, "read"):
            return data
        chunks = []
        for chunk in iter(lambda: data.read(256), b""):
            chunks.append(chunk)
            if self.on_upload_read:
                self.on_upload_read()
        return b"".join(chunks)

    def _callback(self, path):
        target = self.direct_callbacks.pop(path, None)
        if target is None:
            return _error(404, "Resource not found!")
        self._mark_uploaded(*target)
        return _reply(200, {"success": True})

    def _mark_uploaded(self, box, version, provider):
        provider["download_url"] = (
            f"https://vagrantcloud.test/{box['username']}/boxes/{box['name']}"
            f"/versions/{version['version']}/providers/{provider['name']}.box"
        )

    def _find_version(self, username, name, version):
        box = self.boxes.get((username, name))
        if box is None:
            return None
        return next((v for v in box["versions"] if v["version"] == version), None)


@pytest.fixture
def registry():
    return FakeRegistry()


@pytest.fixture
def config():
    return CloudConfig(
        api_url=API_URL,
        token="vc-test-token-0123456789abcdef",
        max_retries=3,
        max_upload_attempts=3,
        backoff_factor=0
    )


@pytest.fixture
def client(config, registry):
    return VagrantCloudClient(config, transport=registry)


@pytest.fixture
def orchestrator(client):
    return PublishOrchestrator(client, console=Console(quiet=True))


@pytest.fixture
def box_file(tmp_path):
    path = tmp_path / "demo.box"
    path.write_bytes(b"vagrant-box-image-bytes" * 64)
    return str(path)

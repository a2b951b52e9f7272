"""
Publish Orchestrator for Vagrant Cloud

Drives a box file from local disk to a versioned, provider-tagged and
optionally released state:

Box ensured -> Version ensured -> Provider ensured -> Ticket obtained ->
Uploading -> Uploaded -> Released

Existing boxes, versions and providers are reused so an interrupted publish
can simply be run again.
"""

import dataclasses
import logging
import time
from dataclasses import dataclass, field
from typing import BinaryIO, List, Optional, Tuple, Union

import backoff
from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn

from .api_client import VagrantCloudClient
from .exceptions import (
    AlreadyReleasedError,
    CloudTimeoutError,
    ConflictError,
    FileValidationError,
    InvalidStateError,
    NetworkError,
    NotFoundError,
    ProviderExistsError,
    PublishError,
    RemoteError,
    UploadFailedError,
    VagrantCloudError,
)
from .file_validator import FileValidator
from .models import (
    BoxProvider,
    BoxVersion,
    Deadline,
    PublishOutcome,
    PublishState,
    UploadTicket,
    VagrantBox,
    VersionStatus,
)


class _DeadlineReader:
    """File wrapper that cuts a stream with CloudTimeoutError once the deadline passes"""

    def __init__(self, handle: BinaryIO, deadline: Deadline):
        self.handle = handle
        self.deadline = deadline

    def read(self, size: int = -1) -> bytes:
        self.deadline.check()
        return self.handle.read(size)

    def readinto(self, buffer) -> int:
        self.deadline.check()
        return self.handle.readinto(buffer)

    def readline(self, size: int = -1) -> bytes:
        self.deadline.check()
        return self.handle.readline(size)

    def __iter__(self):
        return iter(self.readline, b"")

    def fileno(self) -> int:
        return self.handle.fileno()

    def seek(self, offset: int, whence: int = 0) -> int:
        return self.handle.seek(offset, whence)

    def tell(self) -> int:
        return self.handle.tell()

    def close(self):
        self.handle.close()

    @property
    def closed(self) -> bool:
        return self.handle.closed


@dataclass
class _PublishRun:
    """Mutable progress of one publish call"""
    box: VagrantBox
    version: BoxVersion
    provider: BoxProvider
    deadline: Deadline
    local_path: Optional[str] = None
    size_bytes: int = 0
    state: PublishState = PublishState.START
    remote_box: Optional[VagrantBox] = None
    remote_version: Optional[BoxVersion] = None
    remote_provider: Optional[BoxProvider] = None
    upload_attempts: int = 0
    pruned_versions: List[str] = field(default_factory=list)


class PublishOrchestrator:
    """Coordinates the publish workflow with progress output"""

    def __init__(
        self,
        client: VagrantCloudClient,
        console: Console = None,
        validator: FileValidator = None
    ):
        self.client = client
        self.config = client.config
        self.console = console or Console()
        self.validator = validator or FileValidator(chunk_size=self.config.chunk_size)
        self.logger = logging.getLogger(self.__class__.__name__)

    def publish(
        self,
        box: VagrantBox,
        version: BoxVersion,
        provider: BoxProvider,
        local_path: Optional[str] = None,
        release: bool = False,
        deadline: Union[Deadline, float, None] = None,
        overwrite: bool = False,
        prune_other_versions: bool = False
    ) -> PublishOutcome:
        """
        Publish one provider artifact.

        Args:
            box: Target box; description fields that are set are synced
            version: Version string (passed through verbatim) and description
            provider: Provider name and optional architecture; set ``url``
                instead of ``local_path`` for an externally hosted box
            local_path: Box file to upload
            release: Release the version once the artifact is in place
            deadline: Seconds (or a Deadline) bounding the whole call
            overwrite: Replace a provider already bound to another artifact
            prune_other_versions: Remove this provider from every other
                version, deleting versions left empty

        Returns:
            PublishOutcome with the furthest state reached

        Raises:
            PublishError: carrying ``state_reached`` and the underlying ``cause``
        """
        start_time = time.time()
        if not isinstance(deadline, Deadline):
            deadline = Deadline(deadline)

        run = _PublishRun(
            box=box,
            version=version,
            provider=provider,
            deadline=deadline,
            local_path=local_path
        )
        label = f"{box.tag} {version.version} ({provider.label})"

        try:
            self.console.print(f"🚀 Publishing {label}...", style="cyan")
            run.provider = self._prepare_artifact(run)

            self._ensure_box(run)
            already_released = self._ensure_version(run)

            upload_skipped = False
            released, release_error = already_released, None
            if already_released:
                upload_skipped = run.local_path is not None
                self.console.print(f"✅ {provider.label} already released with this artifact", style="green")
            else:
                needs_upload = self._ensure_provider(run, overwrite)
                if needs_upload:
                    self._upload_with_fresh_tickets(run)
                else:
                    upload_skipped = run.local_path is not None
                    if upload_skipped:
                        self.console.print(f"✅ {provider.label} already uploaded, skipping", style="green")
                run.state = PublishState.UPLOADED

            if prune_other_versions:
                self._prune_other_versions(run)

            if release and not already_released:
                released, release_error = self._release(run)

        except PublishError as e:
            if e.state_reached is None:
                e.state_reached = run.state
            self._report_failure(run, label, e)
            raise

        except VagrantCloudError as e:
            error = PublishError(f"Publishing {label} failed: {e}", state_reached=run.state, cause=e)
            self._report_failure(run, label, error)
            raise error from e

        outcome = PublishOutcome(
            state=run.state,
            box=run.remote_box,
            version=run.remote_version,
            provider=run.remote_provider,
            released=released,
            release_error=release_error,
            upload_attempts=run.upload_attempts,
            upload_skipped=upload_skipped,
            pruned_versions=run.pruned_versions,
            total_time_seconds=time.time() - start_time
        )
        self.console.print(f"✅ {label}: {outcome.state.value}", style="bold green")
        return outcome

    def _prepare_artifact(self, run: _PublishRun) -> BoxProvider:
        """Validate the local file and attach its checksum to the provider"""
        provider = run.provider
        if run.local_path is None:
            if not provider.url:
                raise PublishError(
                    "Either a local box file or an external provider URL is required",
                    state_reached=PublishState.START
                )
            return provider

        run.size_bytes = self.validator.require_valid(run.local_path)
        if provider.checksum:
            return provider
        try:
            checksum = self.validator.compute_checksum(run.local_path)
        except OSError as e:
            raise FileValidationError(f"Could not read {run.local_path}: {e}", file_path=run.local_path) from e
        return dataclasses.replace(provider, checksum=checksum, checksum_type=FileValidator.CHECKSUM_TYPE)

    def _ensure_box(self, run: _PublishRun):
        run.deadline.check()
        try:
            remote = self._with_retries(run.deadline, self.client.get_box, run.box)
        except NotFoundError:
            self.logger.info(f"Box {run.box.tag} not found, creating it")
            try:
                remote = self._with_retries(run.deadline, self.client.create_box, run.box)
            except ConflictError:
                self.logger.debug(f"Box {run.box.tag} was created concurrently, re-fetching")
                remote = self._with_retries(run.deadline, self.client.get_box, run.box)

        if run.box.metadata_differs(remote):
            self.logger.info(f"Updating metadata of box {run.box.tag}")
            remote = self._with_retries(run.deadline, self.client.update_box, run.box)

        run.remote_box = remote
        run.state = PublishState.BOX_ENSURED

    def _ensure_version(self, run: _PublishRun) -> bool:
        """Make sure the version is writable; return True when it is already
        released with this exact artifact, leaving nothing to do"""
        run.deadline.check()
        try:
            remote = self._with_retries(run.deadline, self.client.get_version, run.box, run.version)
        except NotFoundError:
            self.logger.info(f"Version {run.version.version} of {run.box.tag} not found, creating it")
            try:
                remote = self._with_retries(run.deadline, self.client.create_version, run.box, run.version)
            except ConflictError:
                self.logger.debug(f"Version {run.version.version} was created concurrently, re-fetching")
                remote = self._with_retries(run.deadline, self.client.get_version, run.box, run.version)

        if remote.status is not VersionStatus.UNRELEASED:
            existing = remote.find_provider(run.provider)
            if (remote.is_released and existing is not None
                    and existing.is_uploaded and run.provider.same_artifact(existing)):
                self.logger.info(f"Version {remote.version} of {run.box.tag} already serves this artifact")
                run.remote_version = remote
                run.remote_provider = existing
                run.state = PublishState.RELEASED
                return True
            raise AlreadyReleasedError(
                f"Version {remote.version} of {run.box.tag} is {remote.status.value}; "
                f"released versions cannot be modified",
                state_reached=run.state
            )

        if run.version.description is not None and run.version.description != remote.description:
            remote = self._with_retries(run.deadline, self.client.update_version, run.box, run.version)

        run.remote_version = remote
        run.state = PublishState.VERSION_ENSURED
        return False

    def _ensure_provider(self, run: _PublishRun, overwrite: bool) -> bool:
        """Make sure the provider exists; return whether bytes must be uploaded"""
        run.deadline.check()
        wanted = run.provider
        existing = run.remote_version.find_provider(wanted)

        if existing is None:
            try:
                created = self._with_retries(
                    run.deadline, self.client.create_provider, run.box, run.version, wanted
                )
            except ConflictError:
                self.logger.debug(f"Provider {wanted.label} was created concurrently, re-fetching")
                existing = self._with_retries(
                    run.deadline, self.client.get_provider, run.box, run.version, wanted
                )
            else:
                return self._provider_ensured(run, created, needs_upload=not wanted.url)

        if existing.is_uploaded and wanted.same_artifact(existing):
            self.logger.info(f"Provider {wanted.label} already holds this artifact")
            return self._provider_ensured(run, existing, needs_upload=False)

        if not existing.is_uploaded:
            # Empty provider left behind by an interrupted publish.
            self.logger.info(f"Resuming pending provider {wanted.label}")
            if not wanted.same_artifact(existing):
                existing = self._with_retries(
                    run.deadline, self.client.update_provider, run.box, run.version, wanted
                )
            return self._provider_ensured(run, existing, needs_upload=not wanted.url)

        if not overwrite:
            raise ProviderExistsError(
                f"Provider {wanted.label} of {run.box.tag} {run.version.version} "
                f"is already bound to a different artifact",
                state_reached=run.state
            )

        self.logger.info(f"Overwriting provider {wanted.label}")
        self._delete(run.deadline, self.client.delete_provider, run.box, run.version, existing)
        try:
            created = self._with_retries(
                run.deadline, self.client.create_provider, run.box, run.version, wanted
            )
        except ConflictError:
            self.logger.debug(f"Provider {wanted.label} already recreated, re-fetching")
            created = self._with_retries(run.deadline, self.client.get_provider, run.box, run.version, wanted)
        return self._provider_ensured(run, created, needs_upload=not wanted.url)

    def _provider_ensured(self, run: _PublishRun, provider: BoxProvider, needs_upload: bool) -> bool:
        run.remote_provider = provider
        run.state = PublishState.PROVIDER_ENSURED
        return needs_upload

    def _upload_with_fresh_tickets(self, run: _PublishRun):
        """Request a ticket, stream, verify; on failure start over with a new ticket"""
        max_attempts = max(self.config.max_upload_attempts, 1)
        last_error: Optional[Exception] = None

        for attempt in range(1, max_attempts + 1):
            run.deadline.check()
            ticket = self._with_retries(
                run.deadline, self.client.get_upload_ticket, run.box, run.version, run.provider
            )
            run.state = PublishState.TICKET_OBTAINED
            run.upload_attempts = attempt

            try:
                run.state = PublishState.UPLOADING
                self._stream(run, ticket)
                self._with_retries(run.deadline, self.client.confirm_upload, ticket)
                remote = self._with_retries(
                    run.deadline, self.client.get_provider, run.box, run.version, run.provider
                )
                if not remote.is_uploaded:
                    raise InvalidStateError(f"Registry has not confirmed the upload of {run.provider.label}")
                run.remote_provider = remote
                self.console.print(f"📦 Uploaded {run.provider.label} ({run.size_bytes} bytes)", style="green")
                return

            except CloudTimeoutError as e:
                if run.deadline.expired:
                    raise
                last_error = e

            except (NetworkError, RemoteError, OSError) as e:
                last_error = e

            run.state = PublishState.PROVIDER_ENSURED
            self.logger.warning(
                f"Upload attempt {attempt}/{max_attempts} for {run.provider.label} failed: {last_error}"
            )
            if attempt < max_attempts:
                self.console.print(f"⚠️  Upload failed, retrying with a new ticket", style="yellow")

        raise UploadFailedError(
            f"Upload of {run.provider.label} failed after {max_attempts} attempts",
            state_reached=PublishState.PROVIDER_ENSURED,
            cause=last_error,
            attempts=max_attempts
        )

    def _stream(self, run: _PublishRun, ticket: UploadTicket):
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            console=self.console,
            transient=True
        ) as progress:
            task = progress.add_task(f"Uploading {run.provider.label}", total=run.size_bytes)
            self.client.upload_artifact(
                ticket,
                run.local_path,
                wrap_stream=lambda f: progress.wrap_file(
                    _DeadlineReader(f, run.deadline), total=run.size_bytes, task_id=task
                ),
                timeout=run.deadline.timeout_for(self.config.upload_timeout)
            )

    def _prune_other_versions(self, run: _PublishRun):
        """Drop this provider from all other versions, deleting emptied versions"""
        wanted = run.provider
        for other in run.remote_box.versions:
            if other.version == run.version.version:
                continue
            match = other.find_provider(wanted)
            if match is None:
                continue

            run.deadline.check()
            self.logger.info(f"Removing provider {match.label} from version {other.version}")
            self._delete(run.deadline, self.client.delete_provider, run.box, other, match)
            if len(other.providers) == 1:
                self.logger.info(f"Deleting version {other.version}, it has no providers left")
                self._delete(run.deadline, self.client.delete_version, run.box, other)
            run.pruned_versions.append(other.version)

    def _release(self, run: _PublishRun) -> Tuple[bool, Optional[Exception]]:
        run.deadline.check()
        try:
            released = self._with_retries(run.deadline, self.client.release_version, run.box, run.version)
        except InvalidStateError as e:
            self.logger.warning(f"Version {run.version.version} could not be released: {e}")
            self.console.print(f"⚠️  Uploaded, but release failed: {e.message}", style="yellow")
            return False, e

        run.remote_version = released
        run.state = PublishState.RELEASED
        return True, None

    def _with_retries(self, deadline: Deadline, func, *args):
        """Call a resource client method, retrying transient network failures"""

        def _log_retry(details):
            self.logger.warning(
                f"{func.__name__} failed ({details['exception']}), "
                f"retry {details['tries']} in {details['wait']:.1f}s"
            )

        @backoff.on_exception(
            backoff.expo,
            NetworkError,
            max_tries=max(self.config.max_retries, 2),
            max_time=deadline.remaining,
            giveup=lambda e: deadline.expired,
            on_backoff=_log_retry,
            factor=self.config.backoff_factor,
            max_value=30
        )
        def _call():
            return func(*args, timeout=deadline.timeout_for(self.config.request_timeout))

        return _call()

    def _delete(self, deadline: Deadline, func, *args):
        """Retried delete; a resource that is already gone counts as deleted"""
        try:
            self._with_retries(deadline, func, *args)
        except NotFoundError:
            self.logger.debug(f"{func.__name__}: resource already gone")

    def _report_failure(self, run: _PublishRun, label: str, error: PublishError):
        run.state = PublishState.FAILED
        self.logger.error(f"[{run.state.value}] {error}")
        self.console.print(f"❌ Publishing {label} failed: {error}", style="red")

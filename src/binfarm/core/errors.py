"""Error taxonomy for build fan-out runs.

Errors fall in three groups. Configuration errors abort a run before any job
starts. Job errors are scoped to one platform: the job runner converts them
into a failed result and the run carries on. Supervisor signals abort the
whole run.
"""

from __future__ import annotations


class BinfarmError(RuntimeError):
    """Base class for all binfarm errors."""


class ConfigurationError(BinfarmError):
    """Raised when the registry or settings are invalid."""


class UnknownPlatform(ConfigurationError):
    """Raised when a requested platform is not in the registry."""

    def __init__(self, platform: str, known: list[str] | None = None):
        self.platform = platform
        self.known = list(known or [])
        hint = f" (known: {', '.join(self.known)})" if self.known else ""
        super().__init__(f"Unknown platform: {platform}{hint}")


class LockAcquisitionError(BinfarmError):
    """Raised when a machine lock is busy; the lock manager retries."""

    def __init__(self, machine: str, path: str):
        self.machine = machine
        self.path = path
        super().__init__(f"Lock for machine {machine} is held: {path}")


class JobError(BinfarmError):
    """
    Base class for failures scoped to a single platform job.

    Attributes:
        code: Exit status reported for the job. Subclasses pick a default
              that mirrors what a shell would have reported.
    """

    default_code = 1

    def __init__(self, message: str, code: int | None = None):
        super().__init__(message)
        self.code = self.default_code if code is None else code


class TransportError(JobError):
    """The machine could not be reached or the transport client failed."""

    default_code = 255


class RemoteBuildError(JobError):
    """The remote build procedure exited with a nonzero status."""


class ArtifactMissing(JobError):
    """The remote build succeeded but the expected artifact is absent."""


class LocalIOError(JobError):
    """A local filesystem step of the job failed."""


class JobCancelled(JobError):
    """The run is being torn down; the job stopped early."""

    default_code = 130


class SupervisorSignal(BinfarmError):
    """Raised when the supervised run was cancelled by a signal."""

    def __init__(self, signum: int):
        self.signum = signum
        super().__init__(f"Run cancelled by signal {signum}")

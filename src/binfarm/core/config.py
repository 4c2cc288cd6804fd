"""Run settings and the on-disk layout of a build root.

Settings are resolved once per invocation: explicit values (usually CLI
options) win over `BINFARM_*` environment variables, which win over the
defaults below. Invalid environment values fall back to the default with a
warning instead of aborting the run.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Iterable

from binfarm.core.errors import ConfigurationError
from binfarm.core.registry import Registry

LOGGER = logging.getLogger(__name__)

_ROOT_ENV = "BINFARM_ROOT"
_REGISTRY_ENV = "BINFARM_REGISTRY"
_LOCK_STRATEGY_ENV = "BINFARM_LOCK_STRATEGY"
_POLL_INTERVAL_ENV = "BINFARM_POLL_INTERVAL"
_STALE_AFTER_ENV = "BINFARM_STALE_AFTER"
_BUILD_COMMAND_ENV = "BINFARM_BUILD_COMMAND"
_REMOTE_DIR_ENV = "BINFARM_REMOTE_DIR"
_PROJECT_ENV = "BINFARM_PROJECT"
_REF_ENV = "BINFARM_REF"
_SSH_ENV = "BINFARM_SSH"
_SCP_ENV = "BINFARM_SCP"
_LOCAL_WORKDIR_ENV = "BINFARM_LOCAL_WORKDIR"

LOCK_STRATEGIES = ("native", "emulated")

DEFAULT_BUILD_COMMAND = (
    "cd {remote_dir} && git fetch --quiet origin && "
    "git checkout --quiet --force {ref} && ./build -m {arch} -c {cpu}"
)


def _env_float(name: str, default: float) -> float:
    """Return a positive float from the environment, or the default."""
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
        if value <= 0:
            raise ValueError
        return value
    except ValueError:
        LOGGER.warning("Invalid %s value '%s'; defaulting to %s", name, raw, default)
        return default


def _env_str(name: str, default: str) -> str:
    raw = os.getenv(name, "").strip()
    return raw or default


@dataclass(frozen=True)
class Settings:
    """
    Resolved configuration for one invocation.

    Attributes:
        root: Directory holding `logs/`, `locks/` and `archives/`.
        registry_path: Optional JSON registry; the built-in table otherwise.
        lock_strategy: `native` (flock) or `emulated` (sentinel files).
        poll_interval: Seconds between lock acquisition attempts.
        stale_after: Seconds without heartbeat before an emulated lock is
            reported as probably stale.
        heartbeat_interval: Seconds between heartbeats of a held emulated lock.
        build_command: Remote command template for one platform.
        remote_dir: Directory on the machine the build command runs from and
            leaves its artifact in.
        project: Artifact name prefix.
        ref: Default source revision passed to the build command.
        ssh: ssh client binary.
        scp: scp client binary.
        local_workdir: Working directory of the `local` protocol; the home
            directory when unset.
    """

    root: Path = field(default_factory=Path.cwd)
    registry_path: Path | None = None
    lock_strategy: str = "native"
    poll_interval: float = 1.0
    stale_after: float = 30.0
    heartbeat_interval: float = 1.0
    build_command: str = DEFAULT_BUILD_COMMAND
    remote_dir: str = "tmux-bin"
    project: str = "tmux"
    ref: str = "master"
    ssh: str = "ssh"
    scp: str = "scp"
    local_workdir: Path | None = None

    def __post_init__(self) -> None:
        if self.lock_strategy not in LOCK_STRATEGIES:
            raise ConfigurationError(
                f"Unknown lock strategy '{self.lock_strategy}' "
                f"(expected one of: {', '.join(LOCK_STRATEGIES)})"
            )
        if self.poll_interval <= 0:
            raise ConfigurationError("poll_interval must be > 0")

    @classmethod
    def from_env(cls, **overrides: Any) -> Settings:
        """
        Build settings from the environment.

        Keyword arguments whose value is None are ignored so CLI options can
        be passed through unconditionally.
        """
        registry_raw = os.getenv(_REGISTRY_ENV, "").strip()
        workdir_raw = os.getenv(_LOCAL_WORKDIR_ENV, "").strip()
        settings = cls(
            root=Path(_env_str(_ROOT_ENV, str(Path.cwd()))),
            registry_path=Path(registry_raw) if registry_raw else None,
            lock_strategy=_env_str(_LOCK_STRATEGY_ENV, "native").lower(),
            poll_interval=_env_float(_POLL_INTERVAL_ENV, 1.0),
            stale_after=_env_float(_STALE_AFTER_ENV, 30.0),
            build_command=_env_str(_BUILD_COMMAND_ENV, DEFAULT_BUILD_COMMAND),
            remote_dir=_env_str(_REMOTE_DIR_ENV, "tmux-bin"),
            project=_env_str(_PROJECT_ENV, "tmux"),
            ref=_env_str(_REF_ENV, "master"),
            ssh=_env_str(_SSH_ENV, "ssh"),
            scp=_env_str(_SCP_ENV, "scp"),
            local_workdir=Path(workdir_raw) if workdir_raw else None,
        )
        given = {k: v for k, v in overrides.items() if v is not None}
        return replace(settings, **given) if given else settings

    def load_registry(self) -> Registry:
        if self.registry_path is None:
            return Registry.default()
        return Registry.load(self.registry_path)

    def artifact_name(self, platform: str) -> str:
        """Return the archive file name produced for a platform."""
        return f"{self.project}-{platform}.tar.gz"

    def layout(self) -> Layout:
        return Layout(Path(self.root).expanduser().resolve(strict=False))


@dataclass(frozen=True)
class Layout:
    """Directories of a build root."""

    root: Path

    @property
    def logs_dir(self) -> Path:
        return self.root / "logs"

    @property
    def locks_dir(self) -> Path:
        return self.root / "locks"

    @property
    def archives_dir(self) -> Path:
        return self.root / "archives"

    @property
    def manifest_path(self) -> Path:
        return self.archives_dir / "MANIFEST"

    def log_for(self, platform: str) -> Path:
        return self.logs_dir / f"{platform}.log"

    def archive_for(self, artifact: str) -> Path:
        return self.archives_dir / artifact

    def ensure(self) -> None:
        for directory in (self.logs_dir, self.locks_dir, self.archives_dir):
            directory.mkdir(parents=True, exist_ok=True)

    def prepare(self, artifacts: Iterable[str]) -> list[Path]:
        """
        Create the directories and remove archives left by a previous run.

        Only archives named in `artifacts` are removed; archives of platforms
        not requested in this run are kept.

        Returns:
            The paths that were removed.
        """
        self.ensure()
        removed: list[Path] = []
        for artifact in artifacts:
            path = self.archive_for(artifact)
            if path.exists():
                path.unlink()
                removed.append(path)
                LOGGER.debug("Removed previous archive %s", path)
        return removed

from __future__ import annotations

import sys
from pathlib import Path

# Ensure tests always import the local src tree, not an older installed wheel.
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

import pytest  # noqa: E402

from binfarm.core.config import Settings  # noqa: E402
from binfarm.core.registry import Registry  # noqa: E402

# Stands in for the remote build script: leaves `<artifact>` in the remote
# directory with one file whose content and mtime are fixed.
BUILD_TARBALL = (
    "cd {remote_dir} && echo building {platform} for {cpu} at {ref} && "
    "mkdir -p stage-{platform} && echo {platform} > stage-{platform}/tmux && "
    "touch -t 200001010000 stage-{platform}/tmux && "
    "tar -czf {artifact} -C stage-{platform} tmux"
)


@pytest.fixture
def remote_home(tmp_path: Path) -> Path:
    """Working directory of the local transport, with the remote build dir in it."""
    home = tmp_path / "remote"
    (home / "work").mkdir(parents=True)
    return home


@pytest.fixture
def make_settings(tmp_path: Path, remote_home: Path):
    def _make(**overrides) -> Settings:
        values = {
            "root": tmp_path / "root",
            "build_command": BUILD_TARBALL,
            "remote_dir": "work",
            "local_workdir": remote_home,
            "poll_interval": 0.05,
            "heartbeat_interval": 0.05,
            "ref": "v1",
        }
        values.update(overrides)
        return Settings(**values)

    return _make


@pytest.fixture
def local_registry():
    def _make(machines: dict[str, str]) -> Registry:
        return Registry.from_mapping(
            {p: {"machine": m, "protocol": "local"} for p, m in machines.items()}
        )

    return _make

"""Artifact packaging and the checksum manifest.

Archives pulled from the machines are repacked deterministically: members in
name order, owner and group stripped, and a gzip header without timestamp or
file name. Two runs over identical remote output therefore produce identical
archives, apart from the timestamps embedded in the members themselves.

Every file written to the archives directory goes through a temporary file
and a rename, so concurrent jobs never interleave bytes of one file and a
reader never sees a partial archive.
"""

from __future__ import annotations

import copy
import gzip
import hashlib
import logging
import os
import tarfile
import tempfile
import zlib
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Iterator, Protocol

from binfarm.core.config import Layout
from binfarm.core.errors import LocalIOError

LOGGER = logging.getLogger(__name__)

_CHUNK_SIZE = 1 << 20
_TMP_PREFIX = ".tmp."


@dataclass(frozen=True)
class Checksums:
    sha256: str
    md5: str


@dataclass(frozen=True)
class ManifestEntry:
    """One produced artifact with its integrity checksums."""

    name: str
    size: int
    sha256: str
    md5: str

    def line(self) -> str:
        return f"{self.name}  {self.size}  {self.sha256}  {self.md5}"


class Hasher(Protocol):
    """Computes the checksums recorded in the manifest."""

    def digest(self, path: Path) -> Checksums:
        """Return both checksums of a file."""
        ...


class HashlibHasher:
    """sha256 and md5 over one streaming read of the file."""

    def __init__(self, chunk_size: int = _CHUNK_SIZE) -> None:
        self.chunk_size = chunk_size

    def digest(self, path: Path) -> Checksums:
        sha256 = hashlib.sha256()
        md5 = hashlib.md5(usedforsecurity=False)
        with open(path, "rb") as fh:
            while chunk := fh.read(self.chunk_size):
                sha256.update(chunk)
                md5.update(chunk)
        return Checksums(sha256=sha256.hexdigest(), md5=md5.hexdigest())


@contextmanager
def atomic_output(dest: Path) -> Iterator[Path]:
    """
    Yield a temporary path beside `dest`; rename it over `dest` on success.

    The temporary file is removed if the block raises.
    """
    dest.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f"{_TMP_PREFIX}{dest.name}.", dir=dest.parent)
    os.close(fd)
    tmp = Path(tmp_name)
    try:
        yield tmp
        os.chmod(tmp, 0o644)
        os.replace(tmp, dest)
    finally:
        tmp.unlink(missing_ok=True)


def _normalized(member: tarfile.TarInfo) -> tarfile.TarInfo:
    info = copy.copy(member)
    info.uid = 0
    info.gid = 0
    info.uname = ""
    info.gname = ""
    info.pax_headers = {}
    return info


def repack_archive(source: Path, dest: Path) -> Path:
    """
    Repack a tarball deterministically and atomically replace `dest`.

    Args:
        source: Archive pulled from the machine (any compression tarfile reads).
        dest: Final `.tar.gz` path in the archives directory.

    Returns:
        `dest`.

    Raises:
        LocalIOError: If the source cannot be read or the result cannot be written.
    """
    try:
        with tarfile.open(source, "r:*") as src, atomic_output(dest) as tmp:
            members = sorted(src.getmembers(), key=lambda m: m.name)
            with open(tmp, "wb") as raw, gzip.GzipFile(
                filename="", mode="wb", fileobj=raw, compresslevel=9, mtime=0
            ) as gz, tarfile.open(fileobj=gz, mode="w", format=tarfile.GNU_FORMAT) as out:
                for member in members:
                    info = _normalized(member)
                    if member.isfile():
                        out.addfile(info, src.extractfile(member))
                    else:
                        out.addfile(info)
    except (OSError, EOFError, tarfile.TarError, zlib.error) as exc:
        raise LocalIOError(f"Cannot repackage {source}: {exc}") from exc

    LOGGER.debug("Repacked %s -> %s (%d members)", source, dest, len(members))
    return dest


def collect_manifest(
    layout: Layout,
    platforms: Iterable[str],
    artifact_name: Callable[[str], str],
    hasher: Hasher | None = None,
) -> list[ManifestEntry]:
    """
    Checksum the archives of the requested platforms.

    Platforms without an archive (their job failed) are skipped; their
    failure has already been reported.

    Returns:
        One entry per existing archive, sorted by name.
    """
    hasher = hasher or HashlibHasher()
    entries: list[ManifestEntry] = []

    for name in sorted({artifact_name(p) for p in platforms}):
        path = layout.archive_for(name)
        if not path.is_file():
            continue
        sums = hasher.digest(path)
        entries.append(
            ManifestEntry(
                name=name,
                size=path.stat().st_size,
                sha256=sums.sha256,
                md5=sums.md5,
            )
        )

    return entries


def write_manifest(entries: Iterable[ManifestEntry], path: Path) -> Path:
    """Atomically write one manifest line per entry."""
    text = "".join(f"{entry.line()}\n" for entry in entries)
    with atomic_output(path) as tmp:
        tmp.write_text(text)
    return path

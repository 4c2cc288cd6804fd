"""Target registry: which machine builds which platform, and over what.

The registry is an immutable value built once at startup, either from the
built-in table or from a JSON file. Transport protocols are chosen by glob
rules over the platform identifier so a whole kernel family can switch
transports without touching individual entries.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from fnmatch import fnmatchcase
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterable, Mapping

from binfarm.core.errors import ConfigurationError, UnknownPlatform

KNOWN_PROTOCOLS = frozenset({"ssh", "local"})

# `uname -m` value -> value passed to gcc as -march (or -mcpu).
_CPU_BY_ARCH: Mapping[str, str] = MappingProxyType(
    {
        "armv6l": "armv6",
        "armv7l": "armv7",
        "arm64": "armv8",
        "aarch64": "armv8-a",
        "ppc64le": "powerpc64le",
        "x86_64": "x86-64",
        "amd64": "x86-64",
        "i386": "i386",
        "i586": "i586",
        "i686": "i686",
    }
)

DEFAULT_PROTOCOL_RULES: tuple[tuple[str, str], ...] = (
    ("linux-*", "ssh"),
    ("darwin-*", "ssh"),
    ("freebsd-*", "ssh"),
)

DEFAULT_MACHINES: Mapping[str, str] = MappingProxyType(
    {
        "linux-x86_64": "build-x86",
        "linux-i386": "build-x86",
        "linux-i586": "build-x86",
        "linux-i686": "build-x86",
        "linux-aarch64": "build-arm64",
        "linux-armv6l": "build-rpi",
        "linux-armv7l": "build-rpi",
        "linux-ppc64le": "build-ppc",
        "darwin-x86_64": "build-mac-intel",
        "darwin-arm64": "build-mac-arm",
        "freebsd-amd64": "build-freebsd",
    }
)


@dataclass(frozen=True)
class Platform:
    """
    A build target identified by kernel and architecture.

    Attributes:
        kernel: Lower-case `uname -s` of the target, e.g. `linux`.
        arch: Lower-case `uname -m` of the target, e.g. `aarch64`.
    """

    kernel: str
    arch: str

    @classmethod
    def parse(cls, identifier: str) -> Platform:
        """Parse `<kernel>-<arch>`; the architecture may itself contain dashes."""
        text = identifier.strip().lower()
        kernel, sep, arch = text.partition("-")
        if not sep or not kernel or not arch:
            raise ConfigurationError(
                f"Invalid platform identifier: '{identifier}' (expected kernel-arch)"
            )
        return cls(kernel=kernel, arch=arch)

    @property
    def id(self) -> str:
        return f"{self.kernel}-{self.arch}"

    def __str__(self) -> str:
        return self.id


@dataclass(frozen=True)
class Target:
    """A platform resolved to the machine and transport that build it."""

    platform: Platform
    machine: str
    protocol: str
    cpu: str

    @property
    def id(self) -> str:
        return self.platform.id


def infer_cpu(arch: str) -> str:
    """Return the compiler CPU name for an architecture."""
    try:
        return _CPU_BY_ARCH[arch]
    except KeyError:
        raise ConfigurationError(
            f"Unable to infer target CPU for architecture '{arch}'; "
            "set 'cpu' for this platform in the registry"
        ) from None


def protocol_rules(raw: Any, source: str = "registry") -> list[tuple[str, str]]:
    """Validate (glob, protocol) rules; both parts must be strings."""
    if isinstance(raw, (str, bytes)) or not isinstance(raw, Iterable):
        raw = [raw]
    rules: list[tuple[str, str]] = []
    for rule in raw:
        if (
            not isinstance(rule, (list, tuple))
            or len(rule) != 2
            or not all(isinstance(part, str) for part in rule)
        ):
            raise ConfigurationError(
                f"{source}: protocol rules must be [glob, protocol] string pairs, got {rule!r}"
            )
        rules.append((rule[0], rule[1]))
    return rules


def select_protocol(platform_id: str, rules: Iterable[tuple[str, str]]) -> str | None:
    """Return the protocol of the first rule whose glob matches, if any."""
    for pattern, protocol in rules:
        if fnmatchcase(platform_id, pattern):
            return protocol
    return None


class Registry:
    """Immutable mapping of platform identifier to `Target`."""

    def __init__(self, targets: Iterable[Target]):
        by_id: dict[str, Target] = {}
        for target in targets:
            if target.id in by_id:
                raise ConfigurationError(f"Duplicate platform in registry: {target.id}")
            by_id[target.id] = target
        self._targets: Mapping[str, Target] = MappingProxyType(by_id)

    @classmethod
    def from_mapping(
        cls,
        platforms: Mapping[str, Any],
        protocols: Iterable[tuple[str, str]] = DEFAULT_PROTOCOL_RULES,
    ) -> Registry:
        """
        Build a registry from plain data.

        Args:
            platforms: Platform identifier to either a machine name or a
                mapping with `machine` and optional `protocol` and `cpu`.
            protocols: Ordered (glob, protocol) rules used for entries that
                do not pin a protocol.

        Raises:
            ConfigurationError: On malformed entries, unknown protocols or
                architectures without a CPU.
        """
        rules = protocol_rules(protocols)
        targets: list[Target] = []

        for raw_id, entry in platforms.items():
            platform = Platform.parse(raw_id)
            if isinstance(entry, str):
                entry = {"machine": entry}
            if not isinstance(entry, Mapping) or not entry.get("machine"):
                raise ConfigurationError(f"Platform {platform} has no machine")

            protocol = entry.get("protocol") or select_protocol(platform.id, rules)
            if protocol is None:
                raise ConfigurationError(f"No transport protocol matches platform {platform}")
            if protocol not in KNOWN_PROTOCOLS:
                raise ConfigurationError(
                    f"Unknown protocol '{protocol}' for platform {platform}"
                )

            cpu = entry.get("cpu") or infer_cpu(platform.arch)
            targets.append(
                Target(
                    platform=platform,
                    machine=str(entry["machine"]),
                    protocol=str(protocol),
                    cpu=str(cpu),
                )
            )

        return cls(targets)

    @classmethod
    def load(cls, path: Path) -> Registry:
        """Load a registry from a JSON file."""
        try:
            payload = json.loads(Path(path).read_text())
        except OSError as exc:
            raise ConfigurationError(f"Cannot read registry {path}: {exc}") from exc
        except json.JSONDecodeError as exc:
            raise ConfigurationError(f"Invalid registry JSON in {path}: {exc}") from exc

        if not isinstance(payload, dict) or not isinstance(payload.get("platforms"), dict):
            raise ConfigurationError(f"Registry {path} must contain a 'platforms' object")

        rules = protocol_rules(
            payload.get("protocols", DEFAULT_PROTOCOL_RULES), source=f"Registry {path}"
        )
        return cls.from_mapping(payload["platforms"], rules)

    @classmethod
    def default(cls) -> Registry:
        """Return the built-in registry."""
        return cls.from_mapping(DEFAULT_MACHINES)

    def platforms(self) -> list[str]:
        """Return all registered platform identifiers in lexical order."""
        return sorted(self._targets)

    def targets(self) -> list[Target]:
        return [self._targets[p] for p in self.platforms()]

    def resolve(self, platform: str) -> Target:
        """Return the target for a platform or raise `UnknownPlatform`."""
        key = platform.strip().lower()
        try:
            return self._targets[key]
        except KeyError:
            raise UnknownPlatform(platform, self.platforms()) from None

    def resolve_all(self, platforms: Iterable[str]) -> list[Target]:
        """
        Resolve a whole request up front.

        An empty request means every registered platform. Duplicates are
        dropped, keeping the first occurrence, so the returned order is the
        request order.
        """
        requested = list(platforms)
        if not requested:
            return self.targets()

        seen: set[str] = set()
        targets: list[Target] = []
        for platform in requested:
            target = self.resolve(platform)
            if target.id in seen:
                continue
            seen.add(target.id)
            targets.append(target)
        return targets

    def __contains__(self, platform: object) -> bool:
        return isinstance(platform, str) and platform.strip().lower() in self._targets

    def __len__(self) -> int:
        return len(self._targets)

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Any, Iterator, Mapping

from shipyard.errors import ManifestResolutionError

SUPPORTED_LOCKFILE_VERSIONS: tuple[int, ...] = (2, 3)
NODE_MODULES = "node_modules"


def package_name_from_location(location: str) -> str | None:
    """`node_modules/a/node_modules/@s/b` -> `@s/b`; None for non node_modules locations."""

    marker = f"{NODE_MODULES}/"
    idx = location.rfind(marker)
    if idx < 0:
        return None
    tail = location[idx + len(marker) :]
    return tail or None


def _deps(entry: Mapping[str, Any], key: str, *, location: str) -> dict[str, str]:
    raw = entry.get(key)
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise ManifestResolutionError(f"Lockfile entry {location or '<root>'}: '{key}' must be an object")
    return {str(k): str(v) for k, v in raw.items()}


@dataclass(frozen=True)
class LockedPackage:
    location: str
    name: str
    version: str | None
    dev: bool = False
    dev_optional: bool = False
    optional: bool = False
    link: bool = False
    resolved: str | None = None
    integrity: str | None = None
    dependencies: Mapping[str, str] = field(default_factory=dict)
    dev_dependencies: Mapping[str, str] = field(default_factory=dict)
    optional_dependencies: Mapping[str, str] = field(default_factory=dict)
    peer_dependencies: Mapping[str, str] = field(default_factory=dict)
    peer_dependencies_meta: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)

    @property
    def installed(self) -> bool:
        """True for real package directories in some node_modules (not links, not workspaces)."""

        return not self.link and package_name_from_location(self.location) is not None

    def runtime_edges(self) -> Iterator[tuple[str, bool]]:
        """Yield (dependency name, optional) for every edge production code may follow."""

        for name in self.dependencies:
            yield name, False
        for name in self.optional_dependencies:
            if name not in self.dependencies:
                yield name, True
        for name in self.peer_dependencies:
            if name in self.dependencies or name in self.optional_dependencies:
                continue
            meta = self.peer_dependencies_meta.get(name) or {}
            yield name, bool(meta.get("optional", False))

    @staticmethod
    def from_entry(location: str, entry: Mapping[str, Any]) -> "LockedPackage":
        if not isinstance(entry, Mapping):
            raise ManifestResolutionError(f"Lockfile entry {location or '<root>'} must be an object")
        name = entry.get("name") or package_name_from_location(location) or location or ""
        peer_meta = entry.get("peerDependenciesMeta") or {}
        return LockedPackage(
            location=location,
            name=str(name),
            version=str(entry["version"]) if entry.get("version") is not None else None,
            dev=bool(entry.get("dev", False)),
            dev_optional=bool(entry.get("devOptional", False)),
            optional=bool(entry.get("optional", False)),
            link=bool(entry.get("link", False)),
            resolved=str(entry["resolved"]) if entry.get("resolved") is not None else None,
            integrity=str(entry["integrity"]) if entry.get("integrity") is not None else None,
            dependencies=_deps(entry, "dependencies", location=location),
            dev_dependencies=_deps(entry, "devDependencies", location=location),
            optional_dependencies=_deps(entry, "optionalDependencies", location=location),
            peer_dependencies=_deps(entry, "peerDependencies", location=location),
            peer_dependencies_meta=dict(peer_meta) if isinstance(peer_meta, Mapping) else {},
        )


@dataclass(frozen=True)
class Lockfile:
    path: str
    version: int
    packages: Mapping[str, LockedPackage]

    @property
    def root(self) -> LockedPackage:
        return self.packages[""]

    def get(self, location: str) -> LockedPackage | None:
        return self.packages.get(location)

    def installed_packages(self) -> list[LockedPackage]:
        return [pkg for location, pkg in sorted(self.packages.items()) if location and pkg.installed]

    def links(self) -> list[LockedPackage]:
        return [pkg for _, pkg in sorted(self.packages.items()) if pkg.link]

    def link_target(self, pkg: LockedPackage) -> LockedPackage | None:
        if not pkg.link or not pkg.resolved:
            return None
        return self.packages.get(pkg.resolved.strip("/"))

    def resolve(self, name: str, *, from_location: str) -> LockedPackage | None:
        """Find the package `name` as node would from `from_location`.

        Looks in `<from>/node_modules/<name>`, then each ancestor's
        node_modules, ending at the top-level `node_modules/<name>`.
        """

        parts = [p for p in from_location.split("/") if p]
        for end in range(len(parts), -1, -1):
            base = parts[:end]
            if base and base[-1] == NODE_MODULES:
                continue
            candidate = "/".join([*base, NODE_MODULES, name])
            found = self.packages.get(candidate)
            if found is not None:
                return found
        return None


def load_lockfile(path: str) -> Lockfile:
    if not os.path.isfile(path):
        raise ManifestResolutionError(f"Missing lockfile: {path}")
    try:
        with open(path, "r", encoding="utf-8") as handle:
            payload = json.load(handle)
    except json.JSONDecodeError as exc:
        raise ManifestResolutionError(f"Invalid JSON in lockfile {path}: {exc}") from exc
    if not isinstance(payload, Mapping):
        raise ManifestResolutionError(f"Lockfile must be a JSON object: {path}")

    version = payload.get("lockfileVersion")
    if version not in SUPPORTED_LOCKFILE_VERSIONS:
        supported = ", ".join(str(v) for v in SUPPORTED_LOCKFILE_VERSIONS)
        raise ManifestResolutionError(
            f"Unsupported lockfileVersion {version!r} in {path} (supported: {supported}); "
            "regenerate it with a current npm"
        )

    raw_packages = payload.get("packages")
    if not isinstance(raw_packages, Mapping) or "" not in raw_packages:
        raise ManifestResolutionError(f"Lockfile {path} has no 'packages' map with a root entry")

    packages = {
        str(location): LockedPackage.from_entry(str(location), entry)
        for location, entry in raw_packages.items()
    }
    return Lockfile(path=os.path.abspath(path), version=int(version), packages=packages)

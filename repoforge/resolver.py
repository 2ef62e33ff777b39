# repoforge/resolver.py
"""
resolver.py - batch-local dependency resolution for repoforge

Features:
- Provides map (virtual or real name -> producing package), last registration wins
- Classification of a dependency as satisfied inside the batch or by the external repository
- Install-set computation with transitive closure over already-built local artifacts
- Per-run cache of dependencies read from built artifacts (.PKGINFO), each artifact read once
"""

from __future__ import annotations

import os
import tarfile
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Union

import zstandard as zstd

from repoforge.errors import BuildOrderError, MetadataError
from repoforge.logging import get_logger
from repoforge.meta import RecipeRecord, strip_constraint

logger = get_logger("resolver")

# -----------------------
# Classification types
# -----------------------
@dataclass(frozen=True)
class LocalBatch:
    package: str

@dataclass(frozen=True)
class _External:
    def __repr__(self) -> str:
        return "External"

External = _External()

InstallClassification = Union[LocalBatch, _External]

@dataclass
class InstallSet:
    our_deps: List[str] = field(default_factory=list)
    repo_deps: List[str] = field(default_factory=list)

# -----------------------
# Batch maps
# -----------------------
def build_provides_map(records: Iterable[RecipeRecord]) -> Dict[str, str]:
    provides: Dict[str, str] = {}
    for record in records:
        for name in record.package_names:
            for provided in record.provides_for(name):
                if provided in provides and provides[provided] != name:
                    logger.debug("provider of %s changes from %s to %s", provided, provides[provided], name)
                provides[provided] = name
    return provides

def build_package_filenames(records: Iterable[RecipeRecord], carch: str, pkgext: str) -> Dict[str, str]:
    return {name: record.artifact_filename(name, carch, pkgext)
            for record in records for name in record.package_names}

def classify_dependency(name: str, package_filenames: Dict[str, str], provides_map: Dict[str, str]) -> InstallClassification:
    if name in package_filenames:
        return LocalBatch(name)
    provider = provides_map.get(name)
    if provider is not None:
        return LocalBatch(provider)
    return External

# -----------------------
# Artifact metadata
# -----------------------
def _find_pkginfo(tf: tarfile.TarFile, path: str) -> str:
    for member in tf:
        if member.name in (".PKGINFO", "./.PKGINFO"):
            return tf.extractfile(member).read().decode("utf-8", errors="replace")
    raise MetadataError(f"{path}: no .PKGINFO member")

def read_pkginfo_depends(path: str) -> List[str]:
    """Return the `depend` entries of a built package's .PKGINFO, constraints stripped."""
    try:
        if path.endswith(".zst"):
            with open(path, "rb") as fh, zstd.ZstdDecompressor().stream_reader(fh) as reader:
                with tarfile.open(fileobj=reader, mode="r|") as tf:
                    data = _find_pkginfo(tf, path)
        else:
            with tarfile.open(path, mode="r|*") as tf:
                data = _find_pkginfo(tf, path)
    except (OSError, tarfile.TarError, zstd.ZstdError) as e:
        raise MetadataError(f"{path}: cannot read package metadata: {e}") from e
    deps = []
    for line in data.splitlines():
        key, sep, value = line.partition("=")
        if sep and key.strip() == "depend":
            deps.append(strip_constraint(value))
    return deps

class ArtifactDependencyCache:
    """Artifact path -> declared dependencies. Lives for one run."""

    def __init__(self, reader: Callable[[str], List[str]] = read_pkginfo_depends):
        self._reader = reader
        self._cache: Dict[str, List[str]] = {}

    def get(self, path: str) -> List[str]:
        if path not in self._cache:
            self._cache[path] = self._reader(path)
        return self._cache[path]

    def __contains__(self, path: str) -> bool:
        return path in self._cache

    def __len__(self) -> int:
        return len(self._cache)

# -----------------------
# Resolver core
# -----------------------
class DependencyResolver:
    def __init__(self, package_filenames: Dict[str, str], provides_map: Dict[str, str],
                 target_dir: str, cache: Optional[ArtifactDependencyCache] = None):
        self.package_filenames = package_filenames
        self.provides_map = provides_map
        self.target_dir = target_dir
        self.cache = cache if cache is not None else ArtifactDependencyCache()

    def classify(self, name: str) -> InstallClassification:
        return classify_dependency(name, self.package_filenames, self.provides_map)

    def artifact_path(self, package: str) -> str:
        return os.path.join(self.target_dir, self.package_filenames[package])

    def resolve_install_set(self, dependencies: Iterable[str], own_packages: Iterable[str] = ()) -> InstallSet:
        """
        Split `dependencies` into local (batch) and external names, then close the local
        set over the dependencies declared by already-built local artifacts.
        """
        own = set(own_packages)
        result = InstallSet()
        queued = set()

        def _add_local(pkg: str):
            if pkg in own or pkg in queued:
                return
            queued.add(pkg)
            result.our_deps.append(pkg)

        for dep in dependencies:
            cls = self.classify(dep)
            if isinstance(cls, LocalBatch):
                _add_local(cls.package)
            elif dep not in result.repo_deps:
                result.repo_deps.append(dep)

        # our_deps grows while it is walked; every package is appended at most once
        i = 0
        while i < len(result.our_deps):
            pkg = result.our_deps[i]
            i += 1
            path = self.artifact_path(pkg)
            if not os.path.exists(path):
                raise BuildOrderError(f"{pkg} is required but {path} has not been built yet; "
                                      "recipes are not listed in dependency order")
            for dep in self.cache.get(path):
                cls = self.classify(dep)
                if isinstance(cls, LocalBatch):
                    _add_local(cls.package)

        logger.debug("install set: local=%s external=%s", result.our_deps, result.repo_deps)
        return result

# repoforge/buildsystem.py
# -*- coding: utf-8 -*-
"""
buildsystem.py - build engine of repoforge

API:
  orch = BuildOrchestrator(settings, driver, runner, verify_mode=False)
  report = orch.run(recipe_dirs)

Per recipe, strictly in the order given:

  PENDING -> SKIP                                   every artifact already built
  PENDING -> RESOLVING_DEPS -> INSTALLING -> BUILDING -> VERIFYING -> DONE
  any failure -> FATAL (the error propagates and the whole run stops)

Behaviour:
  - stale artifacts of a recipe are removed before it is rebuilt, so a failed build
    never leaves a previous package looking like a fresh one
  - dependencies come from the target directory (batch packages, pacman -U) and from
    the sync repositories (pacman -S), always installed --asdeps
  - one conflict retry: conflicting packages are removed with their reverse
    dependencies and the install is attempted once more
  - makepkg runs as the unprivileged build user; the parent only waits for it
  - verify mode removes orphaned dependencies before every install and after the batch
"""

from __future__ import annotations

import os
import enum
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from repoforge.config import Settings
from repoforge.errors import (BuildExecutionError, BuildVerificationError, ConfigError,
                              InstallError, RepoForgeError)
from repoforge.logging import get_logger
from repoforge.meta import MetaLoader, RecipeRecord
from repoforge.pacman import PacmanDriver
from repoforge.repo_index import RepositoryIndex
from repoforge.resolver import (ArtifactDependencyCache, DependencyResolver, InstallSet,
                                build_package_filenames, build_provides_map)

logger = get_logger("buildsystem")

INSTALL_OPTIONS = ["--asdeps", "--needed"]
CASCADE_OPTIONS = ["-c"]
ORPHAN_OPTIONS = ["-n", "-s"]
MAKEPKG_FLAGS = ["-f", "-c", "--noconfirm"]

# --- helpers ---
def _now_ts() -> int:
    return int(time.time())

def _remove(path: str) -> bool:
    if not os.path.lexists(path):
        return False
    try:
        os.remove(path)
    except OSError as e:
        raise BuildExecutionError(f"cannot remove {path}: {e}") from e
    return True

def _nonempty(path: str) -> bool:
    return os.path.isfile(path) and os.path.getsize(path) > 0

class BuildState(enum.Enum):
    PENDING = "pending"
    SKIP = "skip"
    RESOLVING_DEPS = "resolving-deps"
    INSTALLING = "installing"
    BUILDING = "building"
    VERIFYING = "verifying"
    DONE = "done"
    FATAL = "fatal"

@dataclass
class BuildReport:
    built: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    arch_skipped: List[str] = field(default_factory=list)
    index: Dict[str, List[str]] = field(default_factory=dict)
    started_at: int = 0
    finished_at: int = 0

# --- main BuildOrchestrator class ---
class BuildOrchestrator:
    def __init__(self, settings: Settings, driver: PacmanDriver, runner, verify_mode: bool = False,
                 cache: Optional[ArtifactDependencyCache] = None):
        self.settings = settings
        self.driver = driver
        self.runner = runner
        self.verify_mode = verify_mode
        self.cache = cache if cache is not None else ArtifactDependencyCache()
        self.resolver: Optional[DependencyResolver] = None
        self.states: Dict[str, BuildState] = {}

    @property
    def target_dir(self) -> str:
        return self.settings.target_dir

    @property
    def carch(self) -> str:
        return self.settings.makepkg.carch

    @property
    def pkgext(self) -> str:
        return self.settings.makepkg.pkgext

    def artifact_path(self, record: RecipeRecord, name: str) -> str:
        return os.path.join(self.target_dir, record.artifact_filename(name, self.carch, self.pkgext))

    def debug_path(self, record: RecipeRecord, name: str) -> str:
        return os.path.join(self.target_dir, record.debug_filename(name, self.carch, self.pkgext))

    def _set_state(self, record: RecipeRecord, state: BuildState):
        self.states[record.path] = state
        logger.debug("%s: %s", record.path, state.value)

    # --- batch ---
    def load(self, recipes: Sequence[str]):
        loader = MetaLoader(self.carch, self.runner, check_enabled=self.settings.makepkg.check_enabled,
                            makepkg_bin=self.settings.makepkg_bin)
        return loader.load_batch(recipes)

    def prepare(self, records: List[RecipeRecord]) -> DependencyResolver:
        self.resolver = DependencyResolver(
            build_package_filenames(records, self.carch, self.pkgext),
            build_provides_map(records),
            self.target_dir,
            self.cache,
        )
        return self.resolver

    def run(self, recipes: Sequence[str]) -> BuildReport:
        report = BuildReport(started_at=_now_ts())
        try:
            os.makedirs(self.target_dir, exist_ok=True)
        except OSError as e:
            raise ConfigError(f"cannot create target directory {self.target_dir}: {e}") from e
        records, report.arch_skipped = self.load(recipes)
        self.prepare(records)
        logger.info("building %d recipes into %s", len(records), self.target_dir)
        for record in records:
            if self.process(record) is BuildState.SKIP:
                report.skipped.append(record.path)
            else:
                report.built.append(record.path)
        if self.verify_mode:
            self.remove_orphans()
        index = RepositoryIndex(self.target_dir, self.settings.repo_name, self.carch, self.pkgext,
                                db_ext=self.settings.db_ext, runner=self.runner,
                                repo_add_bin=self.settings.repo_add_bin,
                                sign=self.settings.makepkg.sign_enabled)
        report.index = index.update(records)
        report.finished_at = _now_ts()
        return report

    # --- per recipe ---
    def is_built(self, record: RecipeRecord) -> bool:
        return all(_nonempty(self.artifact_path(record, n)) for n in record.package_names)

    def evict(self, record: RecipeRecord) -> None:
        for name in record.package_names:
            for path in (self.artifact_path(record, name), self.debug_path(record, name)):
                if _remove(path):
                    logger.info("removed stale %s", os.path.basename(path))
                _remove(path + ".sig")

    def process(self, record: RecipeRecord) -> BuildState:
        if self.resolver is None:
            raise RepoForgeError("BuildOrchestrator.prepare() must run before process()")
        self._set_state(record, BuildState.PENDING)
        if self.is_built(record):
            logger.info("%s: up to date, skipping", " ".join(record.package_names))
            self._set_state(record, BuildState.SKIP)
            return BuildState.SKIP
        try:
            self.evict(record)
            if self.verify_mode:
                self.remove_orphans()

            self._set_state(record, BuildState.RESOLVING_DEPS)
            install_set = self.resolver.resolve_install_set(record.dependencies, own_packages=record.package_names)

            self._set_state(record, BuildState.INSTALLING)
            self.install_dependencies(install_set)

            self._set_state(record, BuildState.BUILDING)
            self.build(record)

            self._set_state(record, BuildState.VERIFYING)
            self.verify(record)
        except Exception:
            self._set_state(record, BuildState.FATAL)
            logger.error("%s: build failed", record.path)
            raise
        self._set_state(record, BuildState.DONE)
        logger.info("%s: built %s", record.path, " ".join(record.package_names))
        return BuildState.DONE

    # --- installing ---
    def install_with_retry(self, names: List[str], from_files: bool = False) -> None:
        result = self.driver.install(INSTALL_OPTIONS, names, from_files=from_files)
        if result.ok:
            return
        if not result.conflicts:
            raise InstallError(f"cannot install {' '.join(names)} (pacman exited with status {result.returncode})")
        logger.warning("removing conflicting packages and retrying: %s", " ".join(result.conflicts))
        removal = self.driver.uninstall(CASCADE_OPTIONS, result.conflicts)
        if not removal.ok:
            raise InstallError(f"cannot remove conflicting packages {' '.join(result.conflicts)}")
        result = self.driver.install(INSTALL_OPTIONS, names, from_files=from_files)
        if not result.ok:
            raise InstallError(f"cannot install {' '.join(names)} even after removing conflicts")

    def install_dependencies(self, install_set: InstallSet) -> None:
        if install_set.our_deps:
            files = [self.resolver.artifact_path(p) for p in install_set.our_deps]
            logger.info("installing batch dependencies: %s", " ".join(install_set.our_deps))
            self.install_with_retry(files, from_files=True)
        if install_set.repo_deps:
            logger.info("installing repository dependencies: %s", " ".join(install_set.repo_deps))
            self.install_with_retry(install_set.repo_deps)

    def remove_orphans(self) -> List[str]:
        keep = set(self.settings.orphan_keep)
        orphans = [o for o in self.driver.orphans() if o not in keep]
        if not orphans:
            return []
        logger.info("removing orphaned dependencies: %s", " ".join(orphans))
        result = self.driver.uninstall(ORPHAN_OPTIONS, orphans)
        if not result.ok:
            raise InstallError(f"cannot remove orphaned packages {' '.join(orphans)}")
        return orphans

    # --- building ---
    def build_env(self) -> Dict[str, str]:
        env = {"PKGDEST": self.target_dir}
        if self.settings.makepkg.builddir:
            env["BUILDDIR"] = self.settings.makepkg.builddir
        if self.settings.makepkg.srcdest:
            env["SRCDEST"] = self.settings.makepkg.srcdest
        return env

    def build(self, record: RecipeRecord) -> None:
        cmd = [self.settings.makepkg_bin] + MAKEPKG_FLAGS
        logger.info("%s: running %s as %s", record.path, " ".join(cmd), self.settings.build_user)
        rc = self.runner.run_as_build_user(cmd, cwd=record.path, extra_env=self.build_env())
        if rc != 0:
            raise BuildExecutionError(f"{record.path}: {self.settings.makepkg_bin} exited with status {rc}")

    # --- verifying ---
    def verify(self, record: RecipeRecord) -> None:
        for name in record.package_names:
            path = self.artifact_path(record, name)
            if not _nonempty(path):
                raise BuildVerificationError(f"{record.path}: expected package {os.path.basename(path)} was not produced")
            if self.settings.verify_command:
                rc = self.runner.run_as_build_user(list(self.settings.verify_command) + [path], cwd=record.path)
                if rc != 0:
                    _remove(path)
                    raise BuildVerificationError(f"{os.path.basename(path)} rejected by {self.settings.verify_command[0]} (status {rc})")
            if self.settings.makepkg.sign_enabled and not os.path.exists(path + ".sig"):
                _remove(path)
                raise BuildVerificationError(f"{os.path.basename(path)} has no signature")

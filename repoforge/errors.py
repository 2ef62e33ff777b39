# repoforge/errors.py
"""
Error taxonomy for repoforge.

Every error except ArchitectureSkip is fatal: it is raised at the point of
detection and propagates up to the CLI, which prints a single diagnostic and
exits non-zero.
"""

from __future__ import annotations


class RepoForgeError(Exception):
    """Base class for all repoforge errors."""


class ConfigError(RepoForgeError):
    """A required setting is missing or invalid."""


class MetadataError(RepoForgeError):
    """A recipe descriptor is missing, unreadable or incomplete."""


class ArchitectureSkip(RepoForgeError):
    """Recipe is not buildable on this host. Not an error: the recipe is dropped."""

    def __init__(self, path: str, carch: str, architectures):
        self.path = path
        self.carch = carch
        self.architectures = sorted(architectures)
        super().__init__(f"{path}: not supported on {carch} (arch={' '.join(self.architectures)})")


class BuildOrderError(RepoForgeError):
    """A local dependency artifact that should already exist is absent."""


class InstallError(RepoForgeError):
    """Package manager failed to install, even after the conflict retry."""


class BuildExecutionError(RepoForgeError):
    """The build child exited with a non-zero status."""


class BuildVerificationError(RepoForgeError):
    """An expected artifact is absent, rejected by the verify hook or unsigned."""


class RepoIndexError(RepoForgeError):
    """Repository index archive could not be read or written."""

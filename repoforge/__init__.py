"""repoforge - unattended recipe builds into a consistent pacman repository."""

__version__ = "1.0.0"

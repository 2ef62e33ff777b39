# repoforge/runas.py
"""
runas.py - execute a command as the unprivileged build account

Features:
- drop_privileges(): preexec_fn that permanently switches the child to the build user
- deferred_signals(): hold off SIGINT/SIGQUIT in the parent while a child is outstanding,
  then deliver them right after the child has been reaped
- run_as_user(): spawn, wait under deferred_signals, return the exit status
- CommandRunner: the object the build engine calls for every external command, so tests
  can replace it with a recording fake
"""

from __future__ import annotations

import os
import pwd
import signal
import subprocess
from contextlib import contextmanager
from typing import Callable, Dict, IO, Iterator, List, Optional, Sequence

from repoforge.errors import BuildExecutionError, ConfigError
from repoforge.logging import get_logger

logger = get_logger("runas")

_HELD_SIGNALS = (signal.SIGINT, signal.SIGQUIT)


def _lookup(user: str) -> pwd.struct_passwd:
    try:
        return pwd.getpwnam(user)
    except KeyError:
        raise ConfigError(f"build user {user!r} does not exist")


def drop_privileges(user: str) -> Callable[[], None]:
    """Return a preexec_fn that becomes `user` for good (no way back to root)."""
    pw = _lookup(user)

    def _preexec():
        for signum in _HELD_SIGNALS:
            signal.signal(signum, signal.SIG_DFL)
        os.initgroups(pw.pw_name, pw.pw_gid)
        os.setgid(pw.pw_gid)
        os.setuid(pw.pw_uid)

    return _preexec


def user_env(user: str, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    pw = _lookup(user)
    env = dict(os.environ)
    env.update({"HOME": pw.pw_dir, "USER": pw.pw_name, "LOGNAME": pw.pw_name})
    if extra:
        env.update(extra)
    return env


@contextmanager
def deferred_signals(*signums: int) -> Iterator[List[int]]:
    """
    Queue the given signals instead of delivering them. On exit the previous handlers
    are restored and every queued signal is raised again, in arrival order.
    """
    signums = signums or _HELD_SIGNALS
    pending: List[int] = []
    previous = {}

    def _hold(signum, frame):
        pending.append(signum)

    for s in signums:
        previous[s] = signal.signal(s, _hold)
    try:
        yield pending
    finally:
        for s, handler in previous.items():
            signal.signal(s, handler)
        for s in pending:
            logger.warning("delivering deferred signal %s", signal.Signals(s).name)
            signal.raise_signal(s)


def run_as_user(user: str, cmd: Sequence[str], *, cwd: Optional[str] = None,
                env: Optional[Dict[str, str]] = None, stdout: Optional[IO] = None) -> int:
    """Run `cmd` as `user` and wait for it. The parent keeps its own privileges."""
    logger.debug("RUN as %s: %s (cwd=%s)", user, " ".join(cmd), cwd)
    preexec = drop_privileges(user)
    with deferred_signals(*_HELD_SIGNALS):
        try:
            proc = subprocess.Popen(list(cmd), cwd=cwd, env=env or user_env(user), stdout=stdout,
                                    preexec_fn=preexec)
        except (OSError, subprocess.SubprocessError) as e:
            raise BuildExecutionError(f"cannot run {cmd[0]} as {user}: {e}") from e
        return proc.wait()


class CommandRunner:
    """Runs external commands for the build engine."""

    def __init__(self, build_user: str):
        self.build_user = build_user

    def run_as_build_user(self, cmd: Sequence[str], *, cwd: Optional[str] = None,
                          extra_env: Optional[Dict[str, str]] = None, stdout: Optional[IO] = None) -> int:
        return run_as_user(self.build_user, cmd, cwd=cwd, env=user_env(self.build_user, extra_env), stdout=stdout)

    def run(self, cmd: Sequence[str], *, cwd: Optional[str] = None) -> int:
        """Run as the invoking (root) user. OSError is left to the caller, which knows what failed."""
        logger.debug("RUN: %s (cwd=%s)", " ".join(cmd), cwd)
        return subprocess.run(list(cmd), cwd=cwd).returncode

# repoforge/pacman.py
"""
pacman.py - unattended driver for the pacman package manager

pacman asks questions on stderr (conflict removal, provider/group selection, Y/n
confirmations). The driver reads stderr in fixed-size chunks, forwards every chunk to
the operator's terminal and answers recognised prompts on pacman's stdin:

  conflict prompt ("... are in conflict. Remove x? [y/N]")  -> "y"
  selection menu ("Enter a selection", "Enter a number")     -> default (empty line)
  confirmation ("[Y/n]")                                     -> default (empty line)

Matching is done per chunk. A prompt split across two chunks is not recognised and the
call then blocks on pacman; this is a known limit of the automation. Prompts are printed
and flushed just before pacman blocks on input, so in practice a prompt arrives whole.

pacman's stdin is always a pipe owned by the driver, never the operator's terminal.
An unrecognised prompt therefore cannot be answered by hand: the run hangs until
it is interrupted.
"""

from __future__ import annotations

import os
import re
import sys
import enum
import subprocess
from dataclasses import dataclass, field
from typing import IO, List, Optional, Sequence

from repoforge.errors import InstallError
from repoforge.logging import get_logger

logger = get_logger("pacman")

CHUNK_SIZE = 4096
PACMAN_ENV = {"LC_ALL": "C", "LANG": "C"}

_REMOVE_RE = re.compile(r"are in conflict(?: \([^)]*\))?\. Remove (\S+)\?")
_REQUIRED_BY_RE = re.compile(r"breaks dependency '[^']+' required by (\S+)")

# -----------------------
# Prompt protocol
# -----------------------
class PromptKind(enum.Enum):
    NONE = "none"
    CONFLICT = "conflict"
    DEFAULT = "default"

class PromptState(enum.Enum):
    WAITING = "waiting-for-prompt"
    CONFLICT_SEEN = "conflict-prompt-seen"
    DEFAULT_SEEN = "default-prompt-seen"

def classify_chunk(text: str) -> PromptKind:
    if "are in conflict" in text and "[y/N]" in text:
        return PromptKind.CONFLICT
    if "Enter a selection" in text or "Enter a number" in text or "[Y/n]" in text:
        return PromptKind.DEFAULT
    return PromptKind.NONE

_RESPONSES = {
    PromptKind.CONFLICT: b"y\n",
    PromptKind.DEFAULT: b"\n",
}

class PromptMachine:
    """Tracks the last prompt seen and tells the driver what to answer."""

    def __init__(self):
        self.state = PromptState.WAITING
        self.answered = 0

    def feed(self, text: str) -> Optional[bytes]:
        kind = classify_chunk(text)
        if kind is PromptKind.NONE:
            return None
        self.state = PromptState.CONFLICT_SEEN if kind is PromptKind.CONFLICT else PromptState.DEFAULT_SEEN
        self.answered += 1
        return _RESPONSES[kind]

def parse_conflicts(output: str) -> List[str]:
    """Names of installed packages standing in the way of a transaction."""
    names: List[str] = []
    for name in _REMOVE_RE.findall(output) + _REQUIRED_BY_RE.findall(output):
        if name not in names:
            names.append(name)
    return names

@dataclass
class PacmanResult:
    ok: bool
    returncode: int
    output: str = ""
    conflicts: List[str] = field(default_factory=list)

# -----------------------
# Driver
# -----------------------
class PacmanDriver:
    def __init__(self, pacman_bin: str = "pacman", chunk_size: int = CHUNK_SIZE, terminal: Optional[IO[str]] = None):
        self.pacman_bin = pacman_bin
        self.chunk_size = chunk_size
        self.terminal = terminal

    def _env(self):
        env = dict(os.environ)
        env.update(PACMAN_ENV)
        return env

    def _echo(self, text: str):
        term = self.terminal or sys.stderr
        term.write(text)
        term.flush()

    def _answer(self, proc: subprocess.Popen, data: bytes):
        try:
            proc.stdin.write(data)
            proc.stdin.flush()
        except BrokenPipeError:
            logger.debug("pacman closed its input before the answer was written")

    def run(self, args: Sequence[str]) -> PacmanResult:
        cmd = [self.pacman_bin] + list(args)
        logger.info("RUN: %s", " ".join(cmd))
        try:
            proc = subprocess.Popen(cmd, stdin=subprocess.PIPE, stderr=subprocess.PIPE, env=self._env())
        except OSError as e:
            raise InstallError(f"cannot run {self.pacman_bin}: {e}") from e
        machine = PromptMachine()
        chunks: List[str] = []
        fd = proc.stderr.fileno()
        while True:
            chunk = os.read(fd, self.chunk_size)
            if not chunk:
                break
            text = chunk.decode("utf-8", errors="replace")
            chunks.append(text)
            self._echo(text)
            answer = machine.feed(text)
            if answer is None:
                continue
            if machine.state is PromptState.CONFLICT_SEEN:
                self._echo(answer.decode())
            self._answer(proc, answer)
        proc.stderr.close()
        try:
            proc.stdin.close()
        except BrokenPipeError:
            pass
        rc = proc.wait()
        output = "".join(chunks)
        result = PacmanResult(ok=(rc == 0), returncode=rc, output=output, conflicts=parse_conflicts(output))
        if not result.ok:
            logger.warning("%s exited with status %d", " ".join(cmd), rc)
        return result

    # -----------------------
    # Operations
    # -----------------------
    def install(self, options: Sequence[str], names: Sequence[str], from_files: bool = False) -> PacmanResult:
        op = "-U" if from_files else "-S"
        return self.run([op] + list(options) + list(names))

    def uninstall(self, options: Sequence[str], names: Sequence[str]) -> PacmanResult:
        return self.run(["-R"] + list(options) + list(names))

    def sync(self) -> PacmanResult:
        return self.run(["-Sy"])

    def full_upgrade(self) -> PacmanResult:
        return self.run(["-Syu"])

    def orphans(self) -> List[str]:
        """Installed-as-dependency packages nothing depends on (pacman -Qdtq)."""
        try:
            proc = subprocess.run([self.pacman_bin, "-Qdtq"], stdout=subprocess.PIPE, stderr=subprocess.PIPE,
                                  env=self._env(), text=True)
        except OSError as e:
            raise InstallError(f"cannot run {self.pacman_bin}: {e}") from e
        # -Qdtq exits 1 when there is nothing to list
        if proc.returncode not in (0, 1):
            raise InstallError(f"pacman -Qdtq failed: {proc.stderr.strip()}")
        return [line.strip() for line in proc.stdout.splitlines() if line.strip()]

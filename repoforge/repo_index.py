# repoforge/repo_index.py
"""
repo_index.py - keep the repository database consistent with the built packages

Steps (run once, after the whole batch):
1. compute the valid artifact set (every expected package, debug packages only if built)
2. sweep the target directory: unknown package files (and their signatures) are removed
3. reconcile <repo>.db.tar.* (and <repo>.files.tar.* when present): entry groups whose
   package vanished or was rebuilt after the entry was written are dropped, the archive
   is rewritten and the short alias (<repo>.db) refreshed
4. hand every package not yet represented in the database to repo-add
"""

from __future__ import annotations

import io
import os
import shutil
import tarfile
import tempfile
from typing import Dict, Iterable, List, Optional, Set, Tuple

import zstandard as zstd

from repoforge.errors import RepoIndexError
from repoforge.logging import get_logger
from repoforge.meta import ANY, RecipeRecord

logger = get_logger("repo_index")

_WRITE_MODES = {
    ".gz": "w:gz",
    ".xz": "w:xz",
    ".bz2": "w:bz2",
    ".tar": "w",
}

# -----------------------
# Archive helpers
# -----------------------
def _read_members(path: str) -> List[Tuple[tarfile.TarInfo, Optional[bytes]]]:
    """Load an index archive fully into memory: [(info, data-or-None)]."""
    try:
        if path.endswith(".zst"):
            with open(path, "rb") as fh:
                raw = zstd.ZstdDecompressor().stream_reader(fh).read()
            tf = tarfile.open(fileobj=io.BytesIO(raw), mode="r:")
        else:
            tf = tarfile.open(path, mode="r:*")
        with tf:
            out = []
            for info in tf.getmembers():
                data = tf.extractfile(info).read() if info.isfile() else None
                out.append((info, data))
            return out
    except (OSError, tarfile.TarError, zstd.ZstdError) as e:
        raise RepoIndexError(f"cannot read repository index {path}: {e}") from e

def _write_members(path: str, members: Iterable[Tuple[tarfile.TarInfo, Optional[bytes]]]) -> None:
    """Write members to `path` atomically, compression chosen from the extension."""
    directory = os.path.dirname(path) or "."
    fd, tmp = tempfile.mkstemp(prefix=".repoforge-", dir=directory)
    os.close(fd)
    try:
        if path.endswith(".zst"):
            buf = io.BytesIO()
            with tarfile.open(fileobj=buf, mode="w") as tf:
                for info, data in members:
                    tf.addfile(info, io.BytesIO(data) if data is not None else None)
            with open(tmp, "wb") as fh:
                fh.write(zstd.ZstdCompressor().compress(buf.getvalue()))
        else:
            mode = _WRITE_MODES.get(os.path.splitext(path)[1], "w:gz")
            with tarfile.open(tmp, mode=mode) as tf:
                for info, data in members:
                    tf.addfile(info, io.BytesIO(data) if data is not None else None)
        os.chmod(tmp, 0o644)
        os.replace(tmp, path)
    except (OSError, tarfile.TarError, zstd.ZstdError) as e:
        if os.path.exists(tmp):
            os.remove(tmp)
        raise RepoIndexError(f"cannot write repository index {path}: {e}") from e

def _group_key(name: str) -> str:
    return name.strip("/").split("/", 1)[0]

def refresh_alias(archive: str, alias: str) -> None:
    """Point `alias` at `archive` with a relative symlink, or copy where symlinks fail."""
    try:
        if os.path.lexists(alias):
            os.remove(alias)
        try:
            os.symlink(os.path.basename(archive), alias)
        except OSError:
            logger.debug("symlink %s failed, copying instead", alias)
            shutil.copy2(archive, alias)
    except OSError as e:
        raise RepoIndexError(f"cannot refresh {alias}: {e}") from e

# -----------------------
# RepositoryIndex
# -----------------------
class RepositoryIndex:
    def __init__(self, target_dir: str, repo_name: str, carch: str, pkgext: str,
                 db_ext: str = ".db.tar.gz", runner=None, repo_add_bin: str = "repo-add", sign: bool = False):
        self.target_dir = target_dir
        self.repo_name = repo_name
        self.carch = carch
        self.pkgext = pkgext
        self.db_ext = db_ext
        self.runner = runner
        self.repo_add_bin = repo_add_bin
        self.sign = sign

    @property
    def archive_path(self) -> str:
        return os.path.join(self.target_dir, f"{self.repo_name}{self.db_ext}")

    @property
    def alias_path(self) -> str:
        return os.path.join(self.target_dir, f"{self.repo_name}.db")

    @property
    def files_archive_path(self) -> str:
        return os.path.join(self.target_dir, f"{self.repo_name}{self.db_ext.replace('.db', '.files', 1)}")

    @property
    def files_alias_path(self) -> str:
        return os.path.join(self.target_dir, f"{self.repo_name}.files")

    def valid_artifacts(self, records: Iterable[RecipeRecord]) -> Dict[str, str]:
        """filename -> path of every artifact that belongs in the repository."""
        valid: Dict[str, str] = {}
        for record in records:
            for name in record.package_names:
                fname = record.artifact_filename(name, self.carch, self.pkgext)
                valid[fname] = os.path.join(self.target_dir, fname)
                dbg = record.debug_filename(name, self.carch, self.pkgext)
                dbg_path = os.path.join(self.target_dir, dbg)
                if os.path.exists(dbg_path):
                    valid[dbg] = dbg_path
        return valid

    def sweep(self, valid: Dict[str, str]) -> List[str]:
        removed = []
        try:
            for fname in sorted(os.listdir(self.target_dir)):
                if not fname.endswith(self.pkgext) or fname in valid:
                    continue
                path = os.path.join(self.target_dir, fname)
                logger.info("removing stale package %s", fname)
                os.remove(path)
                if os.path.exists(path + ".sig"):
                    os.remove(path + ".sig")
                removed.append(fname)
        except OSError as e:
            raise RepoIndexError(f"cannot sweep {self.target_dir}: {e}") from e
        return removed

    def _entry_filename(self, key: str, valid: Dict[str, str]) -> Optional[str]:
        for arch in (self.carch, ANY):
            fname = f"{key}-{arch}{self.pkgext}"
            if fname in valid:
                return fname
        return None

    def _stale_groups(self, members, valid: Dict[str, str], pending: Set[str]) -> Set[str]:
        groups: Dict[str, Dict[str, tarfile.TarInfo]] = {}
        for info, _ in members:
            key = _group_key(info.name)
            if key:
                groups.setdefault(key, {})[info.name.strip("/")] = info
        stale: Set[str] = set()
        for key, entries in groups.items():
            desc = entries.get(f"{key}/desc")
            fname = self._entry_filename(key, valid)
            if desc is None or fname is None:
                stale.add(key)
                continue
            # tar mtimes have whole-second resolution
            if int(os.path.getmtime(valid[fname])) > desc.mtime:
                stale.add(key)
                continue
            pending.discard(fname)
        return stale

    def _reconcile_archive(self, archive: str, alias: str, valid: Dict[str, str], pending: Set[str]) -> Set[str]:
        members = _read_members(archive)
        stale = self._stale_groups(members, valid, pending)
        if stale:
            logger.info("dropping %d stale entries from %s: %s", len(stale), os.path.basename(archive), " ".join(sorted(stale)))
            _write_members(archive, [(i, d) for i, d in members if _group_key(i.name) not in stale])
            refresh_alias(archive, alias)
        return stale

    def reconcile(self, valid: Dict[str, str]) -> Tuple[Set[str], Set[str]]:
        """
        Drop stale entries from the database. Returns (stale entry keys, filenames that
        are still not represented in the database).
        """
        pending = set(valid)
        stale: Set[str] = set()
        if os.path.exists(self.archive_path):
            stale = self._reconcile_archive(self.archive_path, self.alias_path, valid, pending)
        if os.path.exists(self.files_archive_path):
            self._reconcile_archive(self.files_archive_path, self.files_alias_path, valid, set(valid))
        return stale, pending

    def add(self, filenames: Iterable[str]) -> None:
        names = sorted(filenames)
        if not names:
            return
        cmd = [self.repo_add_bin] + (["--sign"] if self.sign else []) + [self.archive_path] + \
              [os.path.join(self.target_dir, n) for n in names]
        try:
            rc = self.runner.run(cmd, cwd=self.target_dir)
        except OSError as e:
            raise RepoIndexError(f"cannot run {self.repo_add_bin}: {e}") from e
        if rc != 0:
            raise RepoIndexError(f"{self.repo_add_bin} exited with status {rc}")

    def update(self, records: Iterable[RecipeRecord]) -> Dict[str, List[str]]:
        try:
            os.makedirs(self.target_dir, exist_ok=True)
        except OSError as e:
            raise RepoIndexError(f"cannot create {self.target_dir}: {e}") from e
        valid = self.valid_artifacts(records)
        removed = self.sweep(valid)
        stale, pending = self.reconcile(valid)
        self.add(pending)
        logger.info("repository %s: %d packages, %d removed, %d entries dropped, %d added",
                    self.repo_name, len(valid), len(removed), len(stale), len(pending))
        return {"removed": removed, "stale": sorted(stale), "added": sorted(pending)}

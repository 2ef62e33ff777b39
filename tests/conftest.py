import io
import tarfile
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from repoforge.config import MakepkgSettings, Settings
from repoforge.pacman import PacmanResult

CARCH = "x86_64"
PKGEXT = ".pkg.tar.gz"


def make_package(path, name: str = "pkg", depends: Optional[List[str]] = None) -> Path:
    """Write a minimal package archive carrying a .PKGINFO."""
    path = Path(path)
    lines = [f"pkgname = {name}", "pkgver = 1.0-1"] + [f"depend = {d}" for d in depends or []]
    data = ("\n".join(lines) + "\n").encode()
    path.parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(path, "w:gz") as tf:
        info = tarfile.TarInfo(".PKGINFO")
        info.size = len(data)
        tf.addfile(info, io.BytesIO(data))
    return path


def write_srcinfo(recipe_dir: Path, pkgbase: str, packages: List[str], *, arch=("x86_64",),
                  depends=(), makedepends=(), provides=(), pkgver="1.0", pkgrel="1", epoch=None,
                  per_package: Optional[Dict[str, List[str]]] = None) -> Path:
    recipe_dir.mkdir(parents=True, exist_ok=True)
    out = [f"pkgbase = {pkgbase}", f"\tpkgver = {pkgver}", f"\tpkgrel = {pkgrel}"]
    if epoch:
        out.append(f"\tepoch = {epoch}")
    out += [f"\tarch = {a}" for a in arch]
    out += [f"\tdepends = {d}" for d in depends]
    out += [f"\tmakedepends = {d}" for d in makedepends]
    out += [f"\tprovides = {p}" for p in provides]
    for name in packages:
        out.append("")
        out.append(f"pkgname = {name}")
        out += [f"\t{line}" for line in (per_package or {}).get(name, [])]
    (recipe_dir / ".SRCINFO").write_text("\n".join(out) + "\n")
    return recipe_dir


class FakeDriver:
    """Records pacman calls; install results are popped from `install_results`."""

    def __init__(self, install_results=None, orphan_lists=None):
        self.calls = []
        self.install_results = list(install_results or [])
        self.orphan_lists = list(orphan_lists or [])

    def install(self, options, names, from_files=False):
        self.calls.append(("install", list(names), from_files))
        if self.install_results:
            return self.install_results.pop(0)
        return PacmanResult(ok=True, returncode=0)

    def uninstall(self, options, names):
        self.calls.append(("uninstall", list(options), list(names)))
        return PacmanResult(ok=True, returncode=0)

    def orphans(self):
        self.calls.append(("orphans",))
        return self.orphan_lists.pop(0) if self.orphan_lists else []

    def sync(self):
        return PacmanResult(ok=True, returncode=0)

    def full_upgrade(self):
        return PacmanResult(ok=True, returncode=0)


class FakeRunner:
    """
    Plays makepkg, the verify hook and repo-add.

    `products` maps a recipe directory to the packages makepkg writes there:
    {recipe_dir: [(filename, pkgname, depends), ...]}.
    """

    def __init__(self, products=None, build_rc=0, verify_rc=0, repo_add_rc=0, sign=False):
        self.products = products or {}
        self.build_rc = build_rc
        self.verify_rc = verify_rc
        self.repo_add_rc = repo_add_rc
        self.sign = sign
        self.calls = []

    def run_as_build_user(self, cmd, cwd=None, extra_env=None, stdout=None):
        self.calls.append(("as_user", list(cmd), cwd))
        if cmd[0] == "makepkg":
            if self.build_rc != 0:
                return self.build_rc
            dest = Path(extra_env["PKGDEST"])
            for fname, pkgname, depends in self.products.get(str(cwd), []):
                make_package(dest / fname, pkgname, depends)
                if self.sign:
                    (dest / (fname + ".sig")).write_bytes(b"sig")
            return 0
        return self.verify_rc

    def run(self, cmd, cwd=None):
        self.calls.append(("run", list(cmd), cwd))
        return self.repo_add_rc

    def commands(self, kind):
        return [c for c in self.calls if c[0] == kind]


@pytest.fixture
def makepkg_settings():
    return MakepkgSettings(carch=CARCH, pkgext=PKGEXT)


@pytest.fixture
def settings(tmp_path, makepkg_settings):
    return Settings(repo_name="test", target_template=str(tmp_path / "repo" / "{arch}"),
                    makepkg=makepkg_settings)

# repoforge/meta.py
"""
meta.py - loader for recipe descriptors (.SRCINFO)

Features:
- Regenerate a missing or stale .SRCINFO with `makepkg --printsrcinfo` (run as the build user)
- Parse the global (pkgbase) block and per-package (pkgname) override blocks
- Fold runtime, build and (when check is enabled) check dependencies into one list
- Architecture-suffixed keys (depends_x86_64 ...) honoured for the host architecture
- RecipeRecord: artifact filename derivation and architecture gating helpers
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from repoforge.errors import ArchitectureSkip, MetadataError
from repoforge.logging import get_logger

logger = get_logger("meta")

DESCRIPTOR_NAME = ".SRCINFO"
RECIPE_NAME = "PKGBUILD"
ANY = "any"

_LIST_KEYS = ("arch", "depends", "makedepends", "checkdepends", "provides")
_CONSTRAINT_RE = re.compile(r"[<>=]")

# -----------------------
# Utilities
# -----------------------
def strip_constraint(dep: str) -> str:
    """'foo>=1.2' -> 'foo', 'libbar.so=1-64' -> 'libbar.so'"""
    return _CONSTRAINT_RE.split(dep.strip(), 1)[0]

def _dedup(items: Iterable[str]) -> List[str]:
    seen = set()
    out = []
    for i in items:
        if i and i not in seen:
            seen.add(i)
            out.append(i)
    return out

# -----------------------
# Data model
# -----------------------
@dataclass
class RecipeRecord:
    path: str
    package_names: List[str]
    architectures: List[str]
    per_package_arch: Dict[str, str] = field(default_factory=dict)
    epoch: Optional[str] = None
    pkgver: str = ""
    pkgrel: str = ""
    dependencies: List[str] = field(default_factory=list)
    provides_global: List[str] = field(default_factory=list)
    provides_per_package: Dict[str, List[str]] = field(default_factory=dict)

    @property
    def full_version(self) -> str:
        ver = f"{self.pkgver}-{self.pkgrel}"
        return f"{self.epoch}:{ver}" if self.epoch else ver

    def supports_arch(self, carch: str) -> bool:
        return ANY in self.architectures or carch in self.architectures

    def resolved_arch(self, name: str, carch: str) -> str:
        if ANY in self.architectures or self.per_package_arch.get(name) == ANY:
            return ANY
        return carch

    def artifact_filename(self, name: str, carch: str, pkgext: str) -> str:
        return f"{name}-{self.full_version}-{self.resolved_arch(name, carch)}{pkgext}"

    def debug_filename(self, name: str, carch: str, pkgext: str) -> str:
        return f"{name}-debug-{self.full_version}-{self.resolved_arch(name, carch)}{pkgext}"

    def provides_for(self, name: str) -> List[str]:
        if name in self.provides_per_package:
            return self.provides_per_package[name]
        return self.provides_global

# -----------------------
# Parsing
# -----------------------
def _split_blocks(text: str) -> List[List[Tuple[str, str]]]:
    blocks: List[List[Tuple[str, str]]] = []
    current: List[Tuple[str, str]] = []
    for raw in text.splitlines():
        line = raw.strip()
        if not line:
            if current:
                blocks.append(current)
                current = []
            continue
        if line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if not sep:
            raise MetadataError(f"malformed descriptor line: {raw!r}")
        current.append((key.strip(), value.strip()))
    if current:
        blocks.append(current)
    return blocks

def _collect(block: List[Tuple[str, str]], carch: str) -> Dict[str, List[str]]:
    """Group a block's values by key, folding keys suffixed with the host architecture."""
    out: Dict[str, List[str]] = {}
    suffix = f"_{carch}"
    for key, value in block:
        if key.endswith(suffix) and key[:-len(suffix)] in _LIST_KEYS:
            key = key[:-len(suffix)]
        out.setdefault(key, [])
        if value:
            out[key].append(value)
    return out

def parse_descriptor(text: str, path: str, carch: str, check_enabled: bool = False) -> RecipeRecord:
    blocks = _split_blocks(text)
    if not blocks:
        raise MetadataError(f"{path}: empty descriptor")

    glob = _collect(blocks[0], carch)
    dep_keys = ["depends", "makedepends"] + (["checkdepends"] if check_enabled else [])
    deps: List[str] = []
    for k in dep_keys:
        deps.extend(glob.get(k, []))

    names: List[str] = []
    per_arch: Dict[str, str] = {}
    per_provides: Dict[str, List[str]] = {}
    for block in blocks[1:]:
        fields = _collect(block, carch)
        pkgname = (fields.get("pkgname") or [None])[0]
        if not pkgname:
            continue
        names.append(pkgname)
        if "arch" in fields and fields["arch"]:
            per_arch[pkgname] = ANY if ANY in fields["arch"] else fields["arch"][0]
        if "provides" in fields:
            per_provides[pkgname] = _dedup(strip_constraint(p) for p in fields["provides"])
        deps.extend(fields.get("depends", []))

    architectures = _dedup(glob.get("arch", []))
    if not names:
        raise MetadataError(f"{path}: descriptor declares no pkgname")
    if not architectures:
        raise MetadataError(f"{path}: descriptor declares no arch")

    return RecipeRecord(
        path=path,
        package_names=names,
        architectures=architectures,
        per_package_arch=per_arch,
        epoch=(glob.get("epoch") or [None])[0],
        pkgver=(glob.get("pkgver") or [""])[0],
        pkgrel=(glob.get("pkgrel") or [""])[0],
        dependencies=_dedup(strip_constraint(d) for d in deps),
        provides_global=_dedup(strip_constraint(p) for p in glob.get("provides", [])),
        provides_per_package=per_provides,
    )

# -----------------------
# Loader
# -----------------------
class MetaLoader:
    """
    Turns recipe directories into RecipeRecords.

    `runner` must provide run_as_build_user(cmd, cwd=..., stdout=...) -> int; it is
    only used when the descriptor has to be regenerated.
    """

    def __init__(self, carch: str, runner, check_enabled: bool = False, makepkg_bin: str = "makepkg"):
        self.carch = carch
        self.runner = runner
        self.check_enabled = check_enabled
        self.makepkg_bin = makepkg_bin

    def _is_stale(self, recipe_dir: str) -> bool:
        desc = os.path.join(recipe_dir, DESCRIPTOR_NAME)
        if not os.path.exists(desc):
            return True
        recipe = os.path.join(recipe_dir, RECIPE_NAME)
        return os.path.exists(recipe) and os.path.getmtime(recipe) > os.path.getmtime(desc)

    def regenerate(self, recipe_dir: str) -> None:
        desc = os.path.join(recipe_dir, DESCRIPTOR_NAME)
        logger.info("regenerating %s", desc)
        tmp = desc + ".tmp"
        try:
            with open(tmp, "wb") as fh:
                rc = self.runner.run_as_build_user([self.makepkg_bin, "--printsrcinfo"], cwd=recipe_dir, stdout=fh)
            if rc != 0:
                raise MetadataError(f"{recipe_dir}: {self.makepkg_bin} --printsrcinfo failed with status {rc}")
            os.replace(tmp, desc)
        except OSError as e:
            raise MetadataError(f"{recipe_dir}: cannot write {desc}: {e}") from e
        finally:
            if os.path.exists(tmp):
                os.remove(tmp)

    def load(self, recipe: str) -> RecipeRecord:
        recipe_dir = os.path.abspath(recipe)
        if os.path.basename(recipe_dir) == RECIPE_NAME:
            recipe_dir = os.path.dirname(recipe_dir)
        if not os.path.isdir(recipe_dir):
            raise MetadataError(f"{recipe}: recipe directory does not exist")
        if self._is_stale(recipe_dir):
            self.regenerate(recipe_dir)
        desc = os.path.join(recipe_dir, DESCRIPTOR_NAME)
        try:
            with open(desc, "r", encoding="utf-8") as f:
                text = f.read()
        except OSError as e:
            raise MetadataError(f"{recipe_dir}: cannot read {DESCRIPTOR_NAME}: {e}") from e
        return parse_descriptor(text, recipe_dir, self.carch, self.check_enabled)

    def load_batch(self, recipes: Iterable[str]) -> Tuple[List[RecipeRecord], List[str]]:
        """Load every recipe in order. Returns (records, paths skipped for architecture)."""
        out: List[RecipeRecord] = []
        skipped: List[str] = []
        for recipe in recipes:
            record = self.load(recipe)
            try:
                self.check_arch(record)
            except ArchitectureSkip as skip:
                logger.warning("skipping %s", skip)
                skipped.append(record.path)
                continue
            out.append(record)
        return out, skipped

    def check_arch(self, record: RecipeRecord) -> None:
        if not record.supports_arch(self.carch):
            raise ArchitectureSkip(record.path, self.carch, record.architectures)

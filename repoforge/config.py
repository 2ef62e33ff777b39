# repoforge/config.py
# -*- coding: utf-8 -*-
"""
repoforge central configuration loader

Features:
- Read YAML config from multiple locations (explicit path, env override, cwd, user, system)
- Merge with authoritative DEFAULTS, expand path values
- Dot-path access via Config dataclass (get_config(), get())
- Read package-manager settings (CARCH, PKGEXT, BUILDDIR, SRCDEST, BUILDENV) from makepkg.conf
- Combine both sources into a typed Settings object consumed by the build engine
"""

from __future__ import annotations
import os
import shlex
import logging
import subprocess
import threading
from pathlib import Path
from copy import deepcopy
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, List

import yaml

from repoforge.errors import ConfigError

logger = logging.getLogger("repoforge.config")

# ----------------------------
# DEFAULT configuration (authoritative base)
# ----------------------------
DEFAULTS: Dict[str, Any] = {
    "logging": {
        "level": "INFO",
        "file": None,
        "color": True,
        "max_size": "10M",
        "backups": 5,
        "module_levels": {},
    },
    "repository": {
        "name": None,
        "target": "/srv/repo/{arch}",
        "db_ext": ".db.tar.gz",
    },
    "build": {
        "user": "builder",
        "verify_command": None,
        "orphan_keep": [],
        "recipes": [],
    },
    "makepkg": {
        "conf": "/etc/makepkg.conf",
        "bin": "makepkg",
    },
    "pacman": {
        "bin": "pacman",
    },
    "repo_add": {
        "bin": "repo-add",
    },
}

# ----------------------------
# Dataclass to hold config
# ----------------------------
@dataclass
class Config:
    raw: Dict[str, Any] = field(default_factory=dict)     # values loaded from file (if any)
    merged: Dict[str, Any] = field(default_factory=dict)  # merged with DEFAULTS
    path: Optional[Path] = None

    def get(self, path: str, default: Any = None) -> Any:
        """Dot-separated getter for merged config."""
        parts = path.split(".") if path else []
        cur: Any = self.merged
        for p in parts:
            if isinstance(cur, dict) and p in cur:
                cur = cur[p]
            else:
                return default
        return cur

    def as_dict(self) -> Dict[str, Any]:
        return deepcopy(self.merged)

# ----------------------------
# Module state
# ----------------------------
_CONFIG: Optional[Config] = None
_CONFIG_LOCK = threading.RLock()

# ----------------------------
# Utilities
# ----------------------------
def _expand_path(val: Optional[str]) -> Optional[str]:
    if val is None:
        return None
    return os.path.abspath(os.path.expanduser(os.path.expandvars(val)))

def _deep_merge(a: Dict[str, Any], b: Dict[str, Any]) -> Dict[str, Any]:
    res = deepcopy(a)
    for k, v in b.items():
        if k in res and isinstance(res[k], dict) and isinstance(v, dict):
            res[k] = _deep_merge(res[k], v)
        else:
            res[k] = deepcopy(v)
    return res

def _find_candidates(explicit: Optional[str] = None) -> List[Path]:
    candidates: List[Path] = []
    env = os.environ.get("REPOFORGE_CONFIG")
    if explicit:
        candidates.append(Path(explicit))
    if env:
        candidates.append(Path(env))
    candidates.extend([
        Path.cwd() / "repoforge.yaml",
        Path.home() / ".config" / "repoforge" / "config.yaml",
        Path("/etc") / "repoforge" / "config.yaml",
    ])
    return candidates

def _load_file(path: Path) -> Dict[str, Any]:
    try:
        txt = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"cannot read config file {path}: {e}") from e
    try:
        data = yaml.safe_load(txt)
    except yaml.YAMLError as e:
        raise ConfigError(f"cannot parse config file {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"config file {path} must contain a mapping")
    return data

def _normalize(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Expand path-like entries."""
    out = deepcopy(cfg)
    for section, key in (("makepkg", "conf"), ("logging", "file")):
        ref = out.get(section)
        if isinstance(ref, dict) and isinstance(ref.get(key), str):
            ref[key] = _expand_path(ref[key])
    recipes = out.get("build", {}).get("recipes")
    if isinstance(recipes, list):
        out["build"]["recipes"] = [_expand_path(str(r)) for r in recipes]
    return out

# ----------------------------
# Loading
# ----------------------------
def _find_path(explicit: Optional[str] = None) -> Optional[Path]:
    if explicit and not Path(explicit).exists():
        raise ConfigError(f"config file {explicit} does not exist")
    for p in _find_candidates(explicit):
        if p.exists():
            return p
    return None

def load(explicit_path: Optional[str] = None) -> Config:
    """Load and merge config, replacing the module-level instance."""
    global _CONFIG
    with _CONFIG_LOCK:
        cfg_path = _find_path(explicit_path)
        raw: Dict[str, Any] = _load_file(cfg_path) if cfg_path else {}
        merged = _normalize(_deep_merge(DEFAULTS, raw))
        _CONFIG = Config(raw=raw, merged=merged, path=cfg_path)
        logger.debug("config: loaded merged config (from=%s)", str(cfg_path) if cfg_path else "<defaults>")
        return _CONFIG

def get_config() -> Config:
    global _CONFIG
    with _CONFIG_LOCK:
        if _CONFIG is None:
            _CONFIG = Config(raw={}, merged=_normalize(deepcopy(DEFAULTS)))
        return _CONFIG

# ----------------------------
# makepkg.conf
# ----------------------------
_MAKEPKG_DUMP = r"""
source "$1" || exit 1
if [[ -d "$1.d" ]]; then
    for f in "$1.d"/*.conf; do
        [[ -r "$f" ]] && source "$f"
    done
fi
printf 'CARCH=%s\n' "$CARCH"
printf 'PKGEXT=%s\n' "$PKGEXT"
printf 'BUILDDIR=%s\n' "$BUILDDIR"
printf 'SRCDEST=%s\n' "$SRCDEST"
printf 'BUILDENV=%s\n' "${BUILDENV[*]}"
"""

@dataclass
class MakepkgSettings:
    carch: str
    pkgext: str
    builddir: Optional[str] = None
    srcdest: Optional[str] = None
    buildenv: List[str] = field(default_factory=list)

    def _enabled(self, option: str) -> bool:
        return option in self.buildenv and f"!{option}" not in self.buildenv

    @property
    def sign_enabled(self) -> bool:
        return self._enabled("sign")

    @property
    def check_enabled(self) -> bool:
        return self._enabled("check")

def read_makepkg_conf(path: str) -> MakepkgSettings:
    """Source makepkg.conf in bash and pick out the values the build engine needs."""
    if not os.path.exists(path):
        raise ConfigError(f"makepkg configuration {path} does not exist")
    try:
        proc = subprocess.run(["bash", "-c", _MAKEPKG_DUMP, "bash", path],
                              stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
    except OSError as e:
        raise ConfigError(f"cannot source {path}: {e}") from e
    if proc.returncode != 0:
        raise ConfigError(f"cannot source {path}: {proc.stderr.strip()}")
    values: Dict[str, str] = {}
    for line in proc.stdout.splitlines():
        k, _, v = line.partition("=")
        values[k] = v.strip()
    if not values.get("CARCH"):
        raise ConfigError(f"CARCH is not set in {path}")
    if not values.get("PKGEXT"):
        raise ConfigError(f"PKGEXT is not set in {path}")
    return MakepkgSettings(
        carch=values["CARCH"],
        pkgext=values["PKGEXT"],
        builddir=values.get("BUILDDIR") or None,
        srcdest=values.get("SRCDEST") or None,
        buildenv=values.get("BUILDENV", "").split(),
    )

# ----------------------------
# Settings consumed by the engine
# ----------------------------
@dataclass
class Settings:
    repo_name: str
    target_template: str
    makepkg: MakepkgSettings
    build_user: str = "builder"
    db_ext: str = ".db.tar.gz"
    verify_command: List[str] = field(default_factory=list)
    orphan_keep: List[str] = field(default_factory=list)
    recipes: List[str] = field(default_factory=list)
    pacman_bin: str = "pacman"
    makepkg_bin: str = "makepkg"
    repo_add_bin: str = "repo-add"
    target_override: Optional[str] = None

    @property
    def target_dir(self) -> str:
        tmpl = self.target_override or self.target_template
        return _expand_path(tmpl.replace("{arch}", self.makepkg.carch))

def load_settings(cfg: Optional[Config] = None, output: Optional[str] = None,
                  makepkg: Optional[MakepkgSettings] = None) -> Settings:
    """Build Settings from a Config; raises ConfigError for missing required values."""
    cfg = cfg or get_config()
    name = cfg.get("repository.name")
    if not name:
        raise ConfigError("repository.name is not configured")
    user = cfg.get("build.user")
    if not user:
        raise ConfigError("build.user is not configured")
    target = cfg.get("repository.target")
    if not target and not output:
        raise ConfigError("repository.target is not configured")
    verify = cfg.get("build.verify_command")
    if isinstance(verify, str):
        verify = shlex.split(verify)
    if makepkg is None:
        makepkg = read_makepkg_conf(cfg.get("makepkg.conf"))
    return Settings(
        repo_name=str(name),
        target_template=str(target or ""),
        makepkg=makepkg,
        build_user=str(user),
        db_ext=cfg.get("repository.db_ext", ".db.tar.gz"),
        verify_command=list(verify or []),
        orphan_keep=list(cfg.get("build.orphan_keep") or []),
        recipes=list(cfg.get("build.recipes") or []),
        pacman_bin=cfg.get("pacman.bin", "pacman"),
        makepkg_bin=cfg.get("makepkg.bin", "makepkg"),
        repo_add_bin=cfg.get("repo_add.bin", "repo-add"),
        target_override=output,
    )

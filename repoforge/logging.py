# repoforge/logging.py
# -*- coding: utf-8 -*-
"""
repoforge logging

Features:
 - Console color formatter
 - Rotating file handler
 - Module-level configurable log levels (module_levels)
 - Thread-safe reconfiguration from the central config
 - Per-level counters (the CLI run summary reports the warning count)
"""

from __future__ import annotations
import sys
import logging
import logging.handlers
import threading
from pathlib import Path
from typing import Dict, Any, Optional, List

from repoforge.config import get_config

_logger = logging.getLogger("repoforge.logging")

# ----------------------
# Color formatter
# ----------------------
class ColorFormatter(logging.Formatter):
    COLORS = {
        logging.DEBUG: "\033[37m",    # light gray
        logging.INFO: "\033[36m",     # cyan
        logging.WARNING: "\033[33m",  # yellow
        logging.ERROR: "\033[31m",    # red
        logging.CRITICAL: "\033[41;37m", # white on red
    }
    RESET = "\033[0m"

    def __init__(self, fmt: str = None, datefmt: str = None, color: bool = True):
        super().__init__(fmt=fmt, datefmt=datefmt)
        self.color = color

    def format(self, record):
        msg = super().format(record)
        if self.color:
            color = self.COLORS.get(record.levelno, "")
            return f"{color}{msg}{self.RESET}"
        return msg

# ----------------------
# Module-level filter for per-module levels
# ----------------------
class ModuleLevelFilter(logging.Filter):
    def __init__(self, module_levels: Dict[str, str]):
        super().__init__()
        self.module_levels = {m: getattr(logging, lvl.upper(), logging.INFO) for m, lvl in (module_levels or {}).items()}

    def filter(self, record):
        mod = getattr(record, "repoforge_module", None)
        if mod and mod in self.module_levels:
            return record.levelno >= self.module_levels[mod]
        return True

def _default_module(record):
    # records from plain child loggers (repoforge.config) carry no module tag
    if not hasattr(record, "repoforge_module"):
        record.repoforge_module = record.name.rpartition(".")[2]
    return True

# ----------------------
# Size helper
# ----------------------
def _parse_size(s: Any) -> Optional[int]:
    if s is None:
        return None
    if isinstance(s, int):
        return s
    ss = str(s).strip().upper()
    for suffix, mul in (("KB", 1024), ("K", 1024), ("MB", 1024**2), ("M", 1024**2), ("GB", 1024**3), ("G", 1024**3)):
        if ss.endswith(suffix):
            try:
                return int(float(ss[:-len(suffix)]) * mul)
            except ValueError:
                break
    try:
        return int(float(ss))
    except ValueError:
        _logger.debug("logging: parse size failed for %s", s)
        return None

# ----------------------
# RepoForgeLogger (singleton)
# ----------------------
class RepoForgeLogger:
    _instance = None
    _singleton_lock = threading.Lock()

    def __new__(cls):
        with cls._singleton_lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
                cls._instance._inited = False
        return cls._instance

    def __init__(self):
        if self._inited:
            return
        self._lock = threading.RLock()
        self._root = logging.getLogger("repoforge")
        self._root.propagate = False
        self._handlers: List[logging.Handler] = []
        self._module_filter: Optional[ModuleLevelFilter] = None
        self._metrics: Dict[str, int] = {lvl: 0 for lvl in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")}
        self._root.addFilter(self._count_levels_filter)
        self.configure(get_config().merged.get("logging", {}))
        self._inited = True

    def _count_levels_filter(self, record):
        name = record.levelname
        if name in self._metrics:
            self._metrics[name] += 1
        return True

    # ----------------------
    # Configuration
    # ----------------------
    def configure(self, cfg: Dict[str, Any], level: Optional[str] = None):
        with self._lock:
            for h in self._handlers:
                self._root.removeHandler(h)
                h.close()
            self._handlers.clear()

            # logger filters do not see records from child loggers (repoforge.config)
            self._module_filter = ModuleLevelFilter(cfg.get("module_levels") or {})

            root_level = getattr(logging, str(level or cfg.get("level", "INFO")).upper(), logging.INFO)
            fmt = cfg.get("format") or "[%(asctime)s] [%(levelname)s] [%(repoforge_module)s] %(message)s"
            datefmt = cfg.get("datefmt", "%H:%M:%S")

            ch = logging.StreamHandler(sys.stdout)
            ch.setLevel(root_level)
            ch.setFormatter(ColorFormatter(fmt, datefmt=datefmt, color=bool(cfg.get("color", True)) and sys.stdout.isatty()))
            ch.addFilter(_default_module)
            ch.addFilter(self._module_filter)
            self._root.addHandler(ch)
            self._handlers.append(ch)

            if cfg.get("file"):
                file_path = Path(cfg["file"]).expanduser()
                file_path.parent.mkdir(parents=True, exist_ok=True)
                max_bytes = _parse_size(cfg.get("max_size", "10M")) or 10 * 1024 * 1024
                fh = logging.handlers.RotatingFileHandler(str(file_path), maxBytes=max_bytes, backupCount=int(cfg.get("backups", 5)), encoding="utf-8")
                fh.setLevel(getattr(logging, cfg.get("file_level", "DEBUG").upper(), logging.DEBUG))
                fh.setFormatter(logging.Formatter("%(asctime)s %(levelname)s [%(repoforge_module)s] %(message)s"))
                fh.addFilter(_default_module)
                fh.addFilter(self._module_filter)
                self._root.addHandler(fh)
                self._handlers.append(fh)

            self._root.setLevel(min([root_level] + [h.level for h in self._handlers]))

    def get_logger(self, module_name: str) -> logging.LoggerAdapter:
        """Return a LoggerAdapter that injects 'repoforge_module' into records."""
        return logging.LoggerAdapter(self._root, {"repoforge_module": module_name})

    def get_metrics(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._metrics)

# ----------------------
# Public factory
# ----------------------
_GLOBAL_LOGGER = RepoForgeLogger()

def get_logger(module: str) -> logging.LoggerAdapter:
    return _GLOBAL_LOGGER.get_logger(module)

def configure(cfg: Dict[str, Any], level: Optional[str] = None):
    return _GLOBAL_LOGGER.configure(cfg, level=level)

def get_metrics() -> Dict[str, int]:
    return _GLOBAL_LOGGER.get_metrics()

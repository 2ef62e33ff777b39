#!/usr/bin/env python3
# repoforge/cli.py
"""
repoforge CLI - build a batch of recipes into a pacman repository, unattended

  repoforge [-C DIR] [-o TARGET] [--verify] [--config PATH] [--sync] [--upgrade] [RECIPE ...]

Exit status is 0 on success and 1 on any fatal error; the error is reported as a
single bold line on stderr.
"""

from __future__ import annotations

import os
import sys
import argparse
from typing import List, Optional

from rich.console import Console
from rich.text import Text

from repoforge import config as config_mod
from repoforge import logging as rlogging
from repoforge.buildsystem import BuildOrchestrator, BuildReport
from repoforge.errors import ConfigError, InstallError, RepoForgeError
from repoforge.pacman import PacmanDriver
from repoforge.runas import CommandRunner

logger = rlogging.get_logger("cli")

console = Console()
err_console = Console(stderr=True)

# -----------------------
# Small pretty helpers
# -----------------------
def print_ok(msg: str):
    console.print(Text("✔ ", style="bold green") + Text(msg))

def print_err(msg: str):
    err_console.print(Text(f"error: {msg}", style="bold red"))

def print_report(report: BuildReport):
    elapsed = max(0, report.finished_at - report.started_at)
    print_ok(f"{len(report.built)} built, {len(report.skipped)} up to date, "
             f"{len(report.arch_skipped)} unsupported on this architecture in {elapsed}s")
    added = report.index.get("added", [])
    if added:
        print_ok(f"{len(added)} packages added to the repository index")
    warnings = rlogging.get_metrics().get("WARNING", 0)
    if warnings:
        console.print(Text(f"! {warnings} warnings logged during the run", style="yellow"))

# -----------------------
# CLI Implementation
# -----------------------
def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="repoforge", description="Build recipes into a consistent binary package repository")
    ap.add_argument("recipes", nargs="*", help="recipe directories, in dependency order")
    ap.add_argument("-C", "--directory", help="change to DIR before doing anything")
    ap.add_argument("-o", "--output", help="target repository directory (overrides repository.target)")
    ap.add_argument("--verify", action="store_true", help="remove orphaned dependencies between and after builds")
    ap.add_argument("--config", help="explicit config file")
    ap.add_argument("--sync", action="store_true", help="refresh the package databases before building")
    ap.add_argument("--upgrade", action="store_true", help="upgrade the build host before building")
    ap.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    return ap

def _require(result, what: str):
    if not result.ok:
        raise InstallError(f"{what} failed (pacman exited with status {result.returncode})")

def run(args: argparse.Namespace) -> BuildReport:
    if args.directory:
        try:
            os.chdir(args.directory)
        except OSError as e:
            raise ConfigError(f"cannot change to {args.directory}: {e}") from e
    cfg = config_mod.load(args.config)
    rlogging.configure(cfg.merged.get("logging", {}), level="DEBUG" if args.verbose else None)
    if os.geteuid() != 0:
        raise ConfigError("repoforge must be run as root")
    settings = config_mod.load_settings(cfg, output=args.output)
    recipes: List[str] = list(args.recipes) or settings.recipes
    if not recipes:
        raise ConfigError("no recipes given on the command line or in build.recipes")

    runner = CommandRunner(settings.build_user)
    driver = PacmanDriver(settings.pacman_bin)
    if args.upgrade:
        _require(driver.full_upgrade(), "system upgrade")
    elif args.sync:
        _require(driver.sync(), "package database refresh")

    orch = BuildOrchestrator(settings, driver, runner, verify_mode=args.verify)
    return orch.run(recipes)

def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        report = run(args)
    except RepoForgeError as e:
        logger.debug("fatal error", exc_info=True)
        print_err(str(e))
        return 1
    except OSError as e:
        logger.debug("unexpected system error", exc_info=True)
        print_err(str(e))
        return 1
    except KeyboardInterrupt:
        print_err("interrupted")
        return 130
    print_report(report)
    return 0

if __name__ == "__main__":
    sys.exit(main())

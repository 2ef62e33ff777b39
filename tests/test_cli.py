import pytest

from repoforge import cli
from repoforge import config as config_mod
from repoforge.buildsystem import BuildReport
from repoforge.config import MakepkgSettings


@pytest.fixture
def workdir(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    monkeypatch.delenv("REPOFORGE_CONFIG", raising=False)
    (tmp_path / "repoforge.yaml").write_text("repository:\n  name: test\n  target: %s/repo/{arch}\n" % tmp_path)
    return tmp_path


def test_parser():
    args = cli.build_parser().parse_args(["-C", "/src", "-o", "/out", "--verify", "--sync", "a", "b"])
    assert args.directory == "/src"
    assert args.output == "/out"
    assert args.verify and args.sync and not args.upgrade
    assert args.recipes == ["a", "b"]


def test_requires_root(workdir, monkeypatch, capsys):
    monkeypatch.setattr(cli.os, "geteuid", lambda: 1000)
    assert cli.main(["foo"]) == 1
    assert "must be run as root" in capsys.readouterr().err


def test_bad_directory(workdir, capsys):
    assert cli.main(["-C", str(workdir / "missing"), "foo"]) == 1
    assert "cannot change to" in capsys.readouterr().err


def test_missing_repository_name(workdir, monkeypatch, capsys):
    (workdir / "repoforge.yaml").write_text("build:\n  user: builder\n")
    monkeypatch.setattr(cli.os, "geteuid", lambda: 0)
    assert cli.main(["foo"]) == 1
    assert "repository.name" in capsys.readouterr().err


class StubOrchestrator:
    instances = []

    def __init__(self, settings, driver, runner, verify_mode=False):
        self.settings = settings
        self.verify_mode = verify_mode
        self.recipes = None
        StubOrchestrator.instances.append(self)

    def run(self, recipes):
        self.recipes = recipes
        return BuildReport(built=list(recipes), index={"added": ["a-1-1-any.pkg.tar.zst"]})


def test_run_hands_recipes_to_orchestrator(workdir, monkeypatch):
    monkeypatch.setattr(cli.os, "geteuid", lambda: 0)
    monkeypatch.setattr(config_mod, "read_makepkg_conf",
                        lambda path: MakepkgSettings(carch="x86_64", pkgext=".pkg.tar.zst"))
    monkeypatch.setattr(cli, "BuildOrchestrator", StubOrchestrator)
    StubOrchestrator.instances.clear()
    assert cli.main(["--verify", "-o", str(workdir / "out"), "a", "b"]) == 0
    orch = StubOrchestrator.instances[0]
    assert orch.recipes == ["a", "b"]
    assert orch.verify_mode
    assert orch.settings.target_dir == str(workdir / "out")


def test_no_recipes(workdir, monkeypatch, capsys):
    monkeypatch.setattr(cli.os, "geteuid", lambda: 0)
    monkeypatch.setattr(config_mod, "read_makepkg_conf",
                        lambda path: MakepkgSettings(carch="x86_64", pkgext=".pkg.tar.zst"))
    assert cli.main([]) == 1
    assert "no recipes" in capsys.readouterr().err


def test_missing_pacman_binary(workdir, monkeypatch, capsys):
    with open(workdir / "repoforge.yaml", "a") as fh:
        fh.write("pacman:\n  bin: /nonexistent/pacman\n")
    monkeypatch.setattr(cli.os, "geteuid", lambda: 0)
    monkeypatch.setattr(config_mod, "read_makepkg_conf",
                        lambda path: MakepkgSettings(carch="x86_64", pkgext=".pkg.tar.zst"))
    assert cli.main(["--sync", "a"]) == 1
    err = capsys.readouterr().err
    assert "/nonexistent/pacman" in err
    assert "Traceback" not in err


class FailingOrchestrator(StubOrchestrator):
    def run(self, recipes):
        raise PermissionError(13, "Permission denied", "/srv/repo")


def test_system_errors_are_reported_in_one_line(workdir, monkeypatch, capsys):
    monkeypatch.setattr(cli.os, "geteuid", lambda: 0)
    monkeypatch.setattr(config_mod, "read_makepkg_conf",
                        lambda path: MakepkgSettings(carch="x86_64", pkgext=".pkg.tar.zst"))
    monkeypatch.setattr(cli, "BuildOrchestrator", FailingOrchestrator)
    assert cli.main(["a"]) == 1
    err = capsys.readouterr().err
    assert err.startswith("error: ")
    assert "Permission denied" in err


def test_report_shows_elapsed_time(capsys):
    cli.print_report(BuildReport(built=["a"], started_at=100, finished_at=142))
    assert "in 42s" in capsys.readouterr().out


def test_report_counts_logged_warnings(monkeypatch, capsys):
    monkeypatch.setattr(cli.rlogging, "get_metrics", lambda: {"WARNING": 3})
    cli.print_report(BuildReport())
    assert "3 warnings logged during the run" in capsys.readouterr().out

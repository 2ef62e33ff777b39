import logging

from repoforge import logging as rlogging
from repoforge.logging import ModuleLevelFilter, _parse_size


def test_parse_size():
    assert _parse_size("10M") == 10 * 1024 * 1024
    assert _parse_size("512k") == 512 * 1024
    assert _parse_size(2048) == 2048
    assert _parse_size("garbage") is None
    assert _parse_size(None) is None


def test_module_level_filter():
    flt = ModuleLevelFilter({"pacman": "warning"})
    record = logging.LogRecord("repoforge", logging.INFO, __file__, 1, "msg", None, None)
    record.repoforge_module = "pacman"
    assert not flt.filter(record)
    record.repoforge_module = "buildsystem"
    assert flt.filter(record)


def test_adapter_tags_module_and_file_output(tmp_path):
    log_file = tmp_path / "logs" / "repoforge.log"
    try:
        rlogging.configure({"level": "INFO", "color": False, "file": str(log_file),
                            "module_levels": {"noisy": "ERROR"}})
        before = rlogging.get_metrics()["WARNING"]
        rlogging.get_logger("resolver").warning("provider changed")
        rlogging.get_logger("noisy").warning("suppressed")
        logging.getLogger("repoforge.config").info("plain child logger")
        text = log_file.read_text()
        assert "[resolver] provider changed" in text
        assert "suppressed" not in text
        assert "[config] plain child logger" in text
        assert rlogging.get_metrics()["WARNING"] >= before + 1
    finally:
        rlogging.configure({"level": "INFO", "color": False})


def test_module_levels_apply_to_child_loggers(tmp_path):
    log_file = tmp_path / "repoforge.log"
    try:
        rlogging.configure({"level": "INFO", "color": False, "file": str(log_file),
                            "module_levels": {"config": "ERROR"}})
        logging.getLogger("repoforge.config").warning("hidden config warning")
        logging.getLogger("repoforge.config").error("shown config error")
        text = log_file.read_text()
        assert "hidden config warning" not in text
        assert "[config] shown config error" in text
    finally:
        rlogging.configure({"level": "INFO", "color": False})

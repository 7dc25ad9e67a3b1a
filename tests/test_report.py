import io
import json
import logging
from pathlib import Path

import pytest

import cfgdiff


def make_report(left="left.conf", right="right.conf"):
    return cfgdiff.compare_ini(b"[s]\nk=1\n", b"[s]\nk=2\n", left, right)


def test_render_report_colors_signed_lines():
    lines = ["difference between a and b\n", "[s]\n-k=1\n+k=2\n"]
    out = cfgdiff.render_report(lines)
    assert out == (
        "difference between a and b\n"
        "[s]\n"
        "\033[31m-k=1\033[0m\n"
        "\033[32m+k=2\033[0m\n"
    )


def test_render_report_without_color_is_plain_text():
    lines = ["@@ line: 3\n", "+added\n", "-removed\n"]
    assert cfgdiff.render_report(lines, color=False) == "".join(lines)


def test_print_report_writes_to_stream():
    buf = io.StringIO()
    cfgdiff.print_report(make_report(), color=False, stream=buf)
    assert buf.getvalue() == (
        "difference between left.conf and right.conf\n[s]\n-k=1\n+k=2\n\n"
    )


def test_write_report_default_path(tmp_path: Path):
    left = tmp_path / "nova.conf"
    report = make_report(str(left))
    written = cfgdiff.write_report(report)
    assert written == f"{left}.diff"
    assert Path(written).read_text(encoding="utf-8") == report.text()


def test_write_report_creates_parent_directories(tmp_path: Path):
    target = tmp_path / "reports" / "nested" / "out.diff"
    written = cfgdiff.write_report(make_report(), str(target))
    assert written == str(target)
    assert target.read_text(encoding="utf-8").startswith("difference between")


def test_write_report_skips_empty_reports(tmp_path: Path):
    left = tmp_path / "same.conf"
    report = cfgdiff.compare_ini(b"[s]\nk=1\n", b"[s]\nk=1\n", str(left), "r")
    assert cfgdiff.write_report(report) is None
    assert not Path(f"{left}.diff").exists()


def test_default_report_path():
    assert cfgdiff.default_report_path("/etc/nova/nova.conf") == "/etc/nova/nova.conf.diff"
    assert cfgdiff.default_report_path("standalone:/etc/nova/nova.conf") == "nova.conf.diff"


def test_compare_files_writes_diff_next_to_left(tmp_path: Path):
    left = tmp_path / "a.yaml"
    right = tmp_path / "b.yaml"
    left.write_text("a: 1\n", encoding="utf-8")
    right.write_text("a: 2\n", encoding="utf-8")

    report = cfgdiff.compare_files(str(left), str(right))
    assert report.has_differences
    assert (tmp_path / "a.yaml.diff").read_text(encoding="utf-8") == report.text()

    cfgdiff.compare_files(str(right), str(left), write=False)
    assert not (tmp_path / "b.yaml.diff").exists()


def test_compare_files_missing_input(tmp_path: Path):
    with pytest.raises(cfgdiff.FetchError, match="Failed to open file"):
        cfgdiff.compare_files(str(tmp_path / "nope.conf"), str(tmp_path / "other.conf"))


def test_report_to_dict_is_json_serializable():
    data = make_report().to_dict()
    assert json.loads(json.dumps(data)) == data
    assert data["has_differences"] is True
    assert data["entries"] == [
        {"kind": "changed", "location": "s:k", "left": "1", "right": "2"}
    ]
    assert data["lines"][0] == "difference between left.conf and right.conf\n"


def test_setup_logging_levels_and_file(restore_logger, tmp_path: Path):
    log_file = tmp_path / "results.log"
    cfgdiff.setup_logging(verbose=True, log_file=str(log_file))
    assert restore_logger.level == logging.INFO
    assert len(restore_logger.handlers) == 2

    restore_logger.info("Start to compare file contents")
    for handler in restore_logger.handlers:
        handler.flush()
    assert "INFO     Start to compare file contents" in log_file.read_text(encoding="utf-8")

    cfgdiff.setup_logging(verbose=False)
    assert restore_logger.level == logging.WARNING
    assert len(restore_logger.handlers) == 1


def test_colored_formatter_wraps_level_color():
    formatter = cfgdiff.ColoredFormatter("%(levelname)s %(message)s")
    record = logging.LogRecord("cfgdiff", logging.ERROR, __file__, 1, "boom", None, None)
    assert formatter.format(record) == "\033[31mERROR boom\033[0m"


def test_compare_context_log_sink():
    assert cfgdiff.CompareContext(verbose=True).log is cfgdiff.logger
    quiet = cfgdiff.CompareContext().log
    assert quiet is not cfgdiff.logger
    assert quiet.propagate is False

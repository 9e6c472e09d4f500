import os

import pytest

from limaguest.editutil import (
    detect_editor,
    file_warning,
    generate_editor_warning_header,
    open_editor,
)


def _editor(tmp_path, body):
    script = tmp_path / "fake-editor"
    script.write_text("#!/bin/sh\n" + body + "\n")
    script.chmod(0o755)
    return str(script)


def test_file_warning_missing_and_empty(tmp_path):
    assert file_warning(tmp_path / "missing.yaml") == ""
    empty = tmp_path / "empty.yaml"
    empty.write_text("")
    assert file_warning(empty) == ""


def test_file_warning_content(tmp_path):
    path = tmp_path / "default.yaml"
    path.write_text("a: 1\n\nb: 2\n")
    expected = (
        f"# WARNING: {path} includes the following settings,\n"
        "# which are applied before applying this YAML:\n"
        "# -----------\n"
        "# a: 1\n"
        "#\n"
        "# b: 2\n"
        "# -----------\n"
        "\n"
    )
    assert file_warning(path) == expected


def test_header_without_config_dir():
    assert generate_editor_warning_header(None) == "# WARNING: failed to load the config dir\n\n"


def test_header_with_config_dir(tmp_path):
    assert generate_editor_warning_header(tmp_path) == ""
    (tmp_path / "default.yaml").write_text("cpus: 2\n")
    (tmp_path / "override.yaml").write_text("memory: 4GiB\n")
    header = generate_editor_warning_header(tmp_path)
    assert header == file_warning(tmp_path / "default.yaml") + file_warning(tmp_path / "override.yaml")
    assert header.index("cpus: 2") < header.index("memory: 4GiB")


def test_detect_editor_from_env(monkeypatch):
    monkeypatch.setenv("EDITOR", "myeditor")
    assert detect_editor() == "myeditor"


def test_detect_editor_none(monkeypatch, tmp_path):
    monkeypatch.delenv("EDITOR", raising=False)
    monkeypatch.setenv("PATH", str(tmp_path))
    assert detect_editor() is None


def test_open_editor_no_editor(monkeypatch, tmp_path):
    monkeypatch.delenv("EDITOR", raising=False)
    monkeypatch.setenv("PATH", str(tmp_path))
    with pytest.raises(RuntimeError, match="try setting"):
        open_editor("default", b"a: 1\n", "# header\n")


def test_open_editor_strips_header(monkeypatch, tmp_path):
    monkeypatch.setenv("EDITOR", _editor(tmp_path, "printf 'x: 1\\n' >> \"$1\""))
    result = open_editor("default", b"a: 1\n", "# header\n\n")
    assert result == b"a: 1\nx: 1\n"


def test_open_editor_unchanged(monkeypatch, tmp_path):
    monkeypatch.setenv("EDITOR", _editor(tmp_path, "true"))
    assert open_editor("default", b"a: 1\n", "# header\n") == b"a: 1\n"


def test_open_editor_empty_file(monkeypatch, tmp_path):
    monkeypatch.setenv("EDITOR", _editor(tmp_path, ": > \"$1\""))
    assert open_editor("default", b"a: 1\n", "# header\n") == b""


def test_open_editor_whitespace_only(monkeypatch, tmp_path):
    monkeypatch.setenv("EDITOR", _editor(tmp_path, "printf '# header\\n   \\n' > \"$1\""))
    assert open_editor("default", b"a: 1\n", "# header\n") == b""


def test_open_editor_failure_removes_temp(monkeypatch, tmp_path):
    record = tmp_path / "seen"
    monkeypatch.setenv("EDITOR", _editor(tmp_path, f"echo \"$1\" > {record}\nexit 3"))
    with pytest.raises(RuntimeError, match="could not execute editor"):
        open_editor("default", b"a: 1\n", "# header\n")
    temp_path = record.read_text().strip()
    assert os.path.basename(temp_path).startswith("lima-editor-")
    assert not os.path.exists(temp_path)
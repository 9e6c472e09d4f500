"""Let the user edit a YAML document in a text editor."""

from __future__ import annotations

import os
import shutil
import subprocess
import tempfile

DEFAULT_YAML = "default.yaml"
OVERRIDE_YAML = "override.yaml"

_EDITOR_CANDIDATES = ("vim", "vi", "nano", "emacs")


def file_warning(filename: str | os.PathLike) -> str:
    """Return a commented copy of ``filename`` for an editor header, or "" if it is missing or empty."""
    filename = os.fspath(filename)
    try:
        with open(filename, encoding="utf-8") as handle:
            text = handle.read()
    except OSError:
        return ""
    if not text:
        return ""
    lines = [
        f"# WARNING: {filename} includes the following settings,",
        "# which are applied before applying this YAML:",
        "# -----------",
    ]
    lines += [f"# {line}" if line else "#" for line in text.removesuffix("\n").split("\n")]
    lines += ["# -----------", "", ""]
    return "\n".join(lines)


def generate_editor_warning_header(config_dir: str | os.PathLike | None) -> str:
    """Warn about the default and override YAML files in ``config_dir``; None means it is unknown."""
    if config_dir is None:
        return "# WARNING: failed to load the config dir\n\n"
    return file_warning(os.path.join(config_dir, DEFAULT_YAML)) + file_warning(
        os.path.join(config_dir, OVERRIDE_YAML)
    )


def detect_editor() -> str | None:
    """Return ``$EDITOR``, or the first common editor found on PATH, or None."""
    editor = os.environ.get("EDITOR", "")
    if editor:
        return editor
    for candidate in _EDITOR_CANDIDATES:
        found = shutil.which(candidate)
        if found:
            return found
    return None


def open_editor(name: str, content: bytes, hdr: str) -> bytes:
    """Edit ``hdr`` followed by ``content``; return the edited content without the header.

    Returns b"" when the user saved the file empty, optionally with whitespace.
    """
    editor = detect_editor()
    if not editor:
        raise RuntimeError("could not detect a text editor binary, try setting $EDITOR")
    fd, path = tempfile.mkstemp(prefix="lima-editor-")
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(hdr.encode() + content)
        os.chmod(path, 0o600)
        try:
            subprocess.run([editor, path], check=True)
        except (OSError, subprocess.CalledProcessError) as exc:
            raise RuntimeError(
                f"could not execute editor {editor!r} for a file {path!r}: {exc}"
            ) from exc
        with open(path, "rb") as handle:
            modified = handle.read()
    finally:
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
    without_header = modified.removeprefix(hdr.encode())
    if not without_header.strip():
        return b""
    return without_header
import os
import sys
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from limaguest.downloader import (
    Digest,
    DownloadError,
    Status,
    canonical_local_path,
    default_cache_dir,
    download,
    is_local,
)

CONTENT = b"TestDownloadLocal"
CONTENT_DIGEST = "sha256:0c1e0fba69e8919b306d030bf491e3e0c46cf0a8140ff5d7516ba3a83cbea5b3"
EMPTY_FILE_DIGEST = "sha256:e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
WRONG_DIGEST = "sha256:8313944efb4f38570c689813f288058b674ea6c487017a5a4738dc674b65f9d9"


class _Handler(BaseHTTPRequestHandler):
    def do_GET(self):
        self.server.hits.append(self.path)
        if self.path == "/file":
            self.send_response(200)
            self.send_header("Content-Length", str(len(CONTENT)))
            self.end_headers()
            self.wfile.write(CONTENT)
        else:
            self.send_error(404)

    def log_message(self, format, *args):
        pass


@pytest.fixture
def server(monkeypatch):
    for name in ("http_proxy", "HTTP_PROXY", "https_proxy", "HTTPS_PROXY", "all_proxy", "ALL_PROXY"):
        monkeypatch.delenv(name, raising=False)
    httpd = ThreadingHTTPServer(("127.0.0.1", 0), _Handler)
    httpd.hits = []
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    yield httpd
    httpd.shutdown()
    httpd.server_close()


def _url(httpd, path="/file"):
    return f"http://127.0.0.1:{httpd.server_address[1]}{path}"


def test_download_remote_without_cache_without_digest(server, tmp_path):
    local = str(tmp_path / "out")
    r = download(local, _url(server), hide_progress=True)
    assert r.status == Status.DOWNLOADED
    assert r.validated_digest is False
    with open(local, "rb") as handle:
        assert handle.read() == CONTENT

    r = download(local, _url(server), hide_progress=True)
    assert r.status == Status.SKIPPED


def test_download_remote_without_cache_with_digest(server, tmp_path):
    local = str(tmp_path / "out")
    with pytest.raises(DownloadError, match="expected digest"):
        download(local, _url(server), expected_digest=WRONG_DIGEST, hide_progress=True)
    assert not os.path.exists(local)

    r = download(local, _url(server), expected_digest=CONTENT_DIGEST, hide_progress=True)
    assert r.status == Status.DOWNLOADED
    assert r.validated_digest is True

    r = download(local, _url(server), expected_digest=CONTENT_DIGEST, hide_progress=True)
    assert r.status == Status.SKIPPED


def test_download_remote_with_cache(server, tmp_path):
    cache = str(tmp_path / "cache")
    local = str(tmp_path / "out")
    r = download(local, _url(server), cache_dir=cache, expected_digest=CONTENT_DIGEST, hide_progress=True)
    assert r.status == Status.DOWNLOADED
    assert os.path.basename(r.cache_path) == "data"
    digest_file = os.path.join(os.path.dirname(r.cache_path), "sha256.digest")
    with open(digest_file) as handle:
        assert handle.read() == CONTENT_DIGEST

    r = download(local, _url(server), cache_dir=cache, expected_digest=CONTENT_DIGEST, hide_progress=True)
    assert r.status == Status.SKIPPED

    local2 = local + "-2"
    r = download(local2, _url(server), cache_dir=cache, expected_digest=CONTENT_DIGEST, hide_progress=True)
    assert r.status == Status.USED_CACHE
    with open(local2, "rb") as handle:
        assert handle.read() == CONTENT
    assert server.hits == ["/file"]


def test_download_caching_only_mode(server, tmp_path):
    with pytest.raises(DownloadError, match="cache directory to be specified"):
        download("", _url(server), expected_digest=CONTENT_DIGEST, hide_progress=True)

    cache = str(tmp_path / "cache")
    r = download("", _url(server), cache_dir=cache, expected_digest=CONTENT_DIGEST, hide_progress=True)
    assert r.status == Status.DOWNLOADED

    r = download("", _url(server), cache_dir=cache, expected_digest=CONTENT_DIGEST, hide_progress=True)
    assert r.status == Status.USED_CACHE

    local = str(tmp_path / "out")
    r = download(local, _url(server), cache_dir=cache, expected_digest=CONTENT_DIGEST, hide_progress=True)
    assert r.status == Status.USED_CACHE
    with open(local, "rb") as handle:
        assert handle.read() == CONTENT


def test_cached_digest_mismatch(server, tmp_path):
    cache = str(tmp_path / "cache")
    download("", _url(server), cache_dir=cache, expected_digest=CONTENT_DIGEST, hide_progress=True)
    with pytest.raises(DownloadError, match="does not match the cached digest"):
        download("", _url(server), cache_dir=cache, expected_digest=WRONG_DIGEST, hide_progress=True)


def test_http_error_status(server, tmp_path):
    with pytest.raises(DownloadError, match="expected HTTP status 200, got 404"):
        download(str(tmp_path / "out"), _url(server, "/missing"), hide_progress=True)


def test_download_local_without_digest(tmp_path):
    local_file = tmp_path / "src" / "test-file"
    local_file.parent.mkdir()
    local_file.write_bytes(b"")
    local = str(tmp_path / "out")
    r = download(local, "file://" + str(local_file))
    assert r.status == Status.DOWNLOADED
    assert os.path.getsize(local) == 0


def test_download_local_with_file_digest(tmp_path):
    src = tmp_path / "some-file"
    src.write_bytes(CONTENT)
    url = "file://" + str(src)
    local = str(tmp_path / "out")

    with pytest.raises(DownloadError, match="expected digest"):
        download(local, url, expected_digest=EMPTY_FILE_DIGEST)

    r = download(local, url, expected_digest=CONTENT_DIGEST)
    assert r.status == Status.DOWNLOADED
    assert r.validated_digest is True
    with open(local, "rb") as handle:
        assert handle.read() == CONTENT


def test_unavailable_digest_algorithm(tmp_path):
    src = tmp_path / "f"
    src.write_bytes(CONTENT)
    with pytest.raises(ValueError, match="is not available"):
        download(str(tmp_path / "out"), str(src), expected_digest="md5:" + "0" * 32)


def test_digest_parse_round_trip():
    digest = Digest.parse(CONTENT_DIGEST)
    assert digest.algorithm == "sha256"
    assert str(digest) == CONTENT_DIGEST


@pytest.mark.parametrize(
    "text, message",
    [
        ("sha256", "format"),
        ("sha256:", "format"),
        (":abc", "format"),
        ("md5:" + "0" * 32, "unsupported"),
        ("sha256:abc", "length"),
        ("sha256:" + "A" * 64, "format"),
    ],
)
def test_digest_parse_invalid(text, message):
    with pytest.raises(ValueError, match=message):
        Digest.parse(text)


def test_digest_of_file(tmp_path):
    path = tmp_path / "f"
    path.write_bytes(CONTENT)
    assert str(Digest.of_file(path)) == CONTENT_DIGEST
    empty = tmp_path / "e"
    empty.write_bytes(b"")
    assert str(Digest.of_file(empty, "sha256")) == EMPTY_FILE_DIGEST


@pytest.mark.parametrize(
    "s, expected",
    [("foo.yaml", True), ("/abs/path", True), ("file:///abs", True), ("https://example.com/x", False)],
)
def test_is_local(s, expected):
    assert is_local(s) is expected


def test_canonical_local_path():
    assert canonical_local_path("file:///abs/path") == "/abs/path"
    assert canonical_local_path("relative") == os.path.join(os.getcwd(), "relative")
    with pytest.raises(ValueError, match="empty"):
        canonical_local_path("")
    with pytest.raises(ValueError, match="non-local"):
        canonical_local_path("https://example.com/x")
    with pytest.raises(ValueError, match="non-absolute"):
        canonical_local_path("file://relative")


def test_canonical_local_path_expands_home(monkeypatch, tmp_path):
    monkeypatch.setenv("HOME", str(tmp_path))
    assert canonical_local_path("~/x") == os.path.join(str(tmp_path), "x")


def test_default_cache_dir_linux(monkeypatch, tmp_path):
    monkeypatch.setattr(sys, "platform", "linux")
    monkeypatch.setenv("XDG_CACHE_HOME", str(tmp_path))
    assert default_cache_dir() == os.path.join(str(tmp_path), "lima")

    monkeypatch.delenv("XDG_CACHE_HOME")
    monkeypatch.setenv("HOME", str(tmp_path))
    assert default_cache_dir() == os.path.join(str(tmp_path), ".cache", "lima")

    monkeypatch.delenv("HOME")
    with pytest.raises(OSError):
        default_cache_dir()
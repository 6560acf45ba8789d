"""Tests for vmmeter.utils module."""

from __future__ import annotations

import io
from http.client import BadStatusLine, IncompleteRead
from unittest.mock import MagicMock, patch
from urllib.error import HTTPError, URLError

import pytest

from vmmeter.exceptions import DownloadFailed, InvalidRequest, ManagerError
from vmmeter.utils import download_file, get_env, log, parse_int_env, run, utcnow, validate_name


class TestLog:
    def test_info_level(self, capsys):
        log("INFO", "test message")
        captured = capsys.readouterr()
        assert "[INFO]" in captured.out
        assert "test message" in captured.out

    def test_debug_suppressed_by_default(self, capsys, monkeypatch):
        monkeypatch.delenv("LOG_VERBOSE", raising=False)
        log("DEBUG", "should not appear")
        assert capsys.readouterr().out == ""

    def test_debug_when_verbose(self, capsys, monkeypatch):
        monkeypatch.setenv("LOG_VERBOSE", "1")
        log("DEBUG", "now visible")
        assert "now visible" in capsys.readouterr().out


class TestEnvHelpers:
    def test_get_env_default(self, monkeypatch):
        monkeypatch.delenv("TEST_VAR", raising=False)
        assert get_env("TEST_VAR", "fallback") == "fallback"

    def test_int_valid(self, monkeypatch):
        monkeypatch.setenv("TEST_INT", "42")
        assert parse_int_env("TEST_INT", "1") == 42

    def test_int_invalid(self, monkeypatch):
        monkeypatch.setenv("TEST_INT", "abc")
        with pytest.raises(ManagerError, match="must be an integer"):
            parse_int_env("TEST_INT", "1")

    def test_int_bounds(self, monkeypatch):
        monkeypatch.setenv("TEST_INT", "500")
        with pytest.raises(ManagerError, match="<= 100"):
            parse_int_env("TEST_INT", "1", max_val=100)


class TestValidateName:
    @pytest.mark.parametrize("name", ["vm1", "web-01", "A-b-C"])
    def test_accepts(self, name):
        assert validate_name(name) == name

    @pytest.mark.parametrize("name", ["", "vm 1", "vm;ls", "$(id)", "a/b", "vm_1", "evil\n", "vm\r\n", None, 5])
    def test_rejects(self, name):
        with pytest.raises(InvalidRequest):
            validate_name(name)


class TestUtcnow:
    def test_is_naive(self):
        assert utcnow().tzinfo is None


class TestRun:
    def test_never_checks_exit_status(self):
        with patch("vmmeter.utils.subprocess.run") as mock_run:
            run(["true"], timeout=3)
        mock_run.assert_called_once_with(["true"], check=False, text=True, capture_output=True, timeout=3)


class TestDownloadFile:
    def _response(self, payload: bytes):
        response = MagicMock()
        response.headers = {"Content-Length": str(len(payload))}
        response.read.side_effect = io.BytesIO(payload).read
        return response

    def test_writes_destination(self, tmp_path):
        dest = tmp_path / "img" / "base.qcow2"
        with patch("vmmeter.utils.urlopen", return_value=self._response(b"x" * 1000)):
            download_file("http://example.com/base.qcow2", dest)
        assert dest.read_bytes() == b"x" * 1000
        assert list(dest.parent.glob("*.part")) == []

    def test_http_error(self, tmp_path):
        error = HTTPError("http://example.com/x", 404, "Not Found", {}, None)
        with patch("vmmeter.utils.urlopen", side_effect=error):
            with pytest.raises(DownloadFailed, match="HTTP 404"):
                download_file("http://example.com/x", tmp_path / "x")

    def test_url_error(self, tmp_path):
        with patch("vmmeter.utils.urlopen", side_effect=URLError("name resolution failed")):
            with pytest.raises(DownloadFailed) as exc:
                download_file("http://nowhere/x", tmp_path / "x")
        assert exc.value.to_dict()["details"] == "name resolution failed"

    def test_read_error_removes_partial_file(self, tmp_path):
        response = MagicMock()
        response.headers = {}
        response.read.side_effect = [b"abc", OSError("connection reset")]
        with patch("vmmeter.utils.urlopen", return_value=response):
            with pytest.raises(DownloadFailed, match="connection reset"):
                download_file("http://example.com/x", tmp_path / "x")
        assert list(tmp_path.iterdir()) == []

    def test_truncated_transfer(self, tmp_path):
        response = MagicMock()
        response.headers = {"Content-Length": "100"}
        response.read.side_effect = [b"abc", IncompleteRead(b"", 97)]
        with patch("vmmeter.utils.urlopen", return_value=response):
            with pytest.raises(DownloadFailed) as exc:
                download_file("http://example.com/x", tmp_path / "x")
        assert "IncompleteRead" in exc.value.cause
        assert list(tmp_path.iterdir()) == []

    def test_bad_content_length(self, tmp_path):
        response = MagicMock()
        response.headers = {"Content-Length": "lots"}
        with patch("vmmeter.utils.urlopen", return_value=response):
            with pytest.raises(DownloadFailed, match="invalid Content-Length 'lots'"):
                download_file("http://example.com/x", tmp_path / "x")
        assert list(tmp_path.iterdir()) == []

    def test_protocol_error_on_connect(self, tmp_path):
        with patch("vmmeter.utils.urlopen", side_effect=BadStatusLine("garbage")):
            with pytest.raises(DownloadFailed):
                download_file("http://example.com/x", tmp_path / "x")

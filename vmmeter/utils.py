"""Utility functions for vmmeter."""

from __future__ import annotations

import os
import subprocess
import tempfile
import time
from datetime import datetime, timezone
from pathlib import Path
from http.client import HTTPException
from typing import List, Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from vmmeter.constants import NAME_RE, TRUTHY
from vmmeter.exceptions import DownloadFailed, InvalidRequest, ManagerError


def log(level: str, message: str) -> None:
    """Lightweight structured logging with per-level colour."""
    if level == "DEBUG" and os.environ.get("LOG_VERBOSE", "").lower() not in TRUTHY:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def parse_int_env(name: str, default: str, min_val: int = 1, max_val: Optional[int] = None) -> int:
    raw = get_env(name, default)
    assert raw is not None
    try:
        value = int(raw)
    except ValueError:
        raise ManagerError(f"{name} must be an integer (got '{raw}')")
    if value < min_val:
        raise ManagerError(f"{name} must be >= {min_val} (got {value})")
    if max_val is not None and value > max_val:
        raise ManagerError(f"{name} must be <= {max_val} (got {value})")
    return value


def validate_name(raw: object, field: str = "name") -> str:
    """Allow-list check for any caller string that ends up on a command line."""
    if not isinstance(raw, str) or not NAME_RE.fullmatch(raw):
        raise InvalidRequest(f"Invalid {field} '{raw}': use letters, digits and '-' only")
    return raw


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every stored datetime uses."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def run(cmd: List[str], timeout: Optional[float] = None, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging, capturing output. Never raises on exit status."""
    log("DEBUG", f"Running: {' '.join(cmd)}")
    return subprocess.run(cmd, check=False, text=True, capture_output=True, timeout=timeout, **kwargs)


def download_file(url: str, destination: Path, timeout: float = 300, label: str = "Downloading") -> None:
    """Download ``url`` to ``destination`` through a temp file in the same directory."""
    log("INFO", f"{label}: {url}")
    req = Request(url, headers={"User-Agent": "vmmeter/1.0"})
    try:
        response = urlopen(req, timeout=timeout)
    except HTTPError as exc:
        raise DownloadFailed(url, f"HTTP {exc.code} {exc.reason}")
    except URLError as exc:
        raise DownloadFailed(url, str(exc.reason))
    except (OSError, HTTPException) as exc:
        raise DownloadFailed(url, str(exc) or type(exc).__name__)

    total = response.headers.get("Content-Length")
    try:
        total_bytes = int(total) if total else None
    except ValueError:
        raise DownloadFailed(url, f"invalid Content-Length '{total}'")
    downloaded = 0
    next_report = 10
    start_time = time.time()

    ensure_directory(destination.parent)
    with tempfile.NamedTemporaryFile(delete=False, dir=destination.parent, suffix=".part") as tmp:
        tmp_path = Path(tmp.name)
        try:
            chunk_size = 1024 * 256  # 256 KiB
            while True:
                if time.time() - start_time > timeout:
                    raise DownloadFailed(url, f"timed out after {timeout}s")
                try:
                    chunk = response.read(chunk_size)
                except (OSError, HTTPException) as exc:
                    raise DownloadFailed(url, str(exc) or type(exc).__name__) from exc
                if not chunk:
                    break
                tmp.write(chunk)
                downloaded += len(chunk)
                if total_bytes:
                    pct = downloaded * 100 / total_bytes
                    if pct >= next_report:
                        log("DEBUG", f"{destination.name}: {pct:5.1f}% of {total_bytes / (1024 * 1024):.1f} MiB")
                        next_report += 10
            tmp.flush()
        except BaseException:
            tmp.close()
            tmp_path.unlink(missing_ok=True)
            raise
    tmp_path.replace(destination)
    elapsed = time.time() - start_time
    log("SUCCESS", f"Downloaded {downloaded / (1024 * 1024):.1f} MiB in {elapsed:.1f}s")

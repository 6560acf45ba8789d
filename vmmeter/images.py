"""Base image cache for vmmeter."""

from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional

from vmmeter.exceptions import ManagerError, UnknownOS
from vmmeter.models import OSImage
from vmmeter.utils import download_file, ensure_directory, log

Downloader = Callable[..., None]


class DownloadTask:
    """Observable handle on a background download."""

    def __init__(self, os_key: str, future: "Future[Path]") -> None:
        self.os_key = os_key
        self.future = future

    @property
    def state(self) -> str:
        if self.future.running():
            return "running"
        if not self.future.done():
            return "pending"
        return "failed" if self.future.exception() is not None else "done"

    def to_dict(self) -> Dict[str, Optional[str]]:
        payload: Dict[str, Optional[str]] = {"osKey": self.os_key, "state": self.state, "path": None, "error": None}
        if self.future.done():
            exc = self.future.exception()
            if exc is None:
                payload["path"] = str(self.future.result())
            else:
                payload["error"] = str(exc)
        return payload


class ImageCache:
    def __init__(
        self,
        catalog: Mapping[str, OSImage],
        cache_dir: Path,
        timeout: float = 300,
        downloader: Downloader = download_file,
        max_workers: int = 2,
    ) -> None:
        self.catalog = catalog
        self.cache_dir = cache_dir
        self.timeout = timeout
        self._download = downloader
        self._lock = threading.Lock()
        self._inflight: Dict[str, "Future[Path]"] = {}
        self._tasks: Dict[str, DownloadTask] = {}
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="image-download")

    def resolve(self, os_key: str) -> OSImage:
        image = self.catalog.get(os_key)
        if image is None:
            raise UnknownOS(os_key, list(self.catalog))
        return image

    def local_path(self, image: OSImage) -> Path:
        return self.cache_dir / image.filename

    def ensure_local(self, os_key: str) -> Path:
        """Return the cached base image path, downloading it first if absent.

        Callers racing on the same key share one download; whoever arrives
        second blocks on the first caller's result instead of starting over.
        Cached files are trusted as-is, no checksum is taken.
        """
        image = self.resolve(os_key)
        destination = self.local_path(image)
        if destination.exists():
            log("INFO", f"Using cached image: {destination}")
            return destination

        with self._lock:
            if destination.exists():
                return destination
            future = self._inflight.get(os_key)
            owner = future is None
            if owner:
                future = Future()
                future.set_running_or_notify_cancel()
                self._inflight[os_key] = future

        if not owner:
            log("INFO", f"Waiting for in-flight download of {os_key}")
            return future.result()

        try:
            ensure_directory(self.cache_dir)
            self._download(image.url, destination, timeout=self.timeout, label=f"Downloading {image.key}")
        except BaseException as exc:
            future.set_exception(exc)
            raise
        else:
            future.set_result(destination)
            return destination
        finally:
            with self._lock:
                self._inflight.pop(os_key, None)

    def start_download(self, os_key: str) -> DownloadTask:
        self.resolve(os_key)
        with self._lock:
            task = self._tasks.get(os_key)
            if task is not None and not task.future.done():
                return task
            task = DownloadTask(os_key, self._executor.submit(self._download_logged, os_key))
            self._tasks[os_key] = task
        return task

    def _download_logged(self, os_key: str) -> Path:
        try:
            return self.ensure_local(os_key)
        except ManagerError as exc:
            log("ERROR", f"Background download of {os_key} failed: {exc}")
            raise

    def task(self, os_key: str) -> Optional[DownloadTask]:
        with self._lock:
            return self._tasks.get(os_key)

    def list_images(self) -> List[Dict[str, object]]:
        images = []
        for key in sorted(self.catalog):
            image = self.catalog[key]
            path = self.local_path(image)
            task = self.task(key)
            images.append(
                {
                    "key": key,
                    "name": image.name,
                    "variant": image.variant,
                    "filename": image.filename,
                    "path": str(path),
                    "cached": path.exists(),
                    "download": task.state if task is not None else None,
                }
            )
        return images

    def shutdown(self, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait)

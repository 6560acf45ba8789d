"""Composition root and request routing for vmmeter."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from vmmeter.billing import BillingAggregator
from vmmeter.config import EngineConfig, load_os_catalog
from vmmeter.db import Storage
from vmmeter.exceptions import InvalidRequest, ManagerError, NotFound
from vmmeter.hypervisor import HypervisorAdapter
from vmmeter.images import Downloader, ImageCache
from vmmeter.models import VMSpec
from vmmeter.network import NetworkManager
from vmmeter.provisioner import DiskProvisioner
from vmmeter.registry import VMRegistry
from vmmeter.sampler import UsageSampler
from vmmeter.scheduler import Scheduler, every, monthly
from vmmeter.utils import download_file, ensure_directory, log

_NAME = r"(?P<name>[^/]+)"


@dataclass
class Response:
    status: int
    body: Any


def _int_field(body: Dict[str, Any], key: str, default: Optional[int] = None) -> Optional[int]:
    raw = body.get(key, default)
    if raw is None:
        return None
    if isinstance(raw, bool):
        raise InvalidRequest(f"{key} must be an integer")
    try:
        return int(raw)
    except (TypeError, ValueError) as exc:
        raise InvalidRequest(f"{key} must be an integer (got {raw!r})") from exc


def spec_from_body(body: Optional[Dict[str, Any]], default_network: str) -> VMSpec:
    """Map a create request body onto a VMSpec. Field-level checks happen in the registry."""
    if not isinstance(body, dict):
        raise InvalidRequest("Request body must be a JSON object")
    missing = [key for key in ("name", "memory", "vcpu", "osKey", "ssh") if body.get(key) in (None, "")]
    if missing:
        raise InvalidRequest(f"Missing required field(s): {', '.join(missing)}")
    user_id = body.get("userId")
    return VMSpec(
        name=str(body["name"]),
        memory_mb=_int_field(body, "memory"),
        vcpus=_int_field(body, "vcpu"),
        disk_size_gb=_int_field(body, "diskSizeGB", 20),
        os_key=str(body["osKey"]),
        network=str(body.get("network") or default_network),
        ssh_public_key=str(body["ssh"]),
        user_id=str(user_id) if user_id is not None else None,
        plan_id=_int_field(body, "planId"),
    )


class Engine:
    """Builds every component once and routes requests to them."""

    def __init__(
        self,
        config: EngineConfig,
        hypervisor: Optional[HypervisorAdapter] = None,
        downloader: Downloader = download_file,
        storage: Optional[Storage] = None,
    ) -> None:
        self.config = config
        ensure_directory(config.data_dir)
        self.storage = storage or Storage(config.database_url)
        self.storage.create_schema()
        self.catalog = load_os_catalog(config.catalog_path)
        self.hypervisor = hypervisor or HypervisorAdapter(
            uri=config.libvirt_uri, timeout=config.command_timeout, graphics=config.graphics
        )
        self.images = ImageCache(
            self.catalog, config.base_images_dir, timeout=config.download_timeout, downloader=downloader
        )
        self.provisioner = DiskProvisioner(config.vm_images_dir, config.seed_dir, timeout=config.command_timeout)
        self.registry = VMRegistry(self.storage, self.images, self.provisioner, self.hypervisor)
        self.networks = NetworkManager(self.hypervisor, config.state_dir, config.network_name)
        self.sampler = UsageSampler(self.hypervisor, self.storage)
        self.billing = BillingAggregator(self.storage)
        self.scheduler = Scheduler()
        self._routes: List[Tuple[str, "re.Pattern[str]", Callable[..., Response]]] = []
        self._register_routes()

    def close(self) -> None:
        self.images.shutdown(wait=False)
        self.storage.dispose()

    def build_scheduler(self) -> Scheduler:
        self.scheduler.add("usage-sampler", lambda now: self.sampler.run(now), every(self.config.sample_interval))
        self.scheduler.add("billing", lambda now: self.billing.run(now), monthly())
        return self.scheduler

    # -- routing ---------------------------------------------------------------

    def _route(self, method: str, pattern: str, handler: Callable[..., Response]) -> None:
        self._routes.append((method, re.compile(f"^{pattern}$"), handler))

    def _register_routes(self) -> None:
        self._route("POST", "/vms", self._create_vm)
        self._route("GET", "/vms", lambda body: Response(200, self.registry.list()))
        self._route("GET", f"/vms/{_NAME}", lambda body, name: Response(200, self.registry.get(name)))
        self._route("POST", f"/vms/{_NAME}/start", lambda body, name: Response(200, self.registry.start(name)))
        self._route("POST", f"/vms/{_NAME}/shutdown", lambda body, name: Response(200, self.registry.shutdown(name)))
        self._route("POST", f"/vms/{_NAME}/poweroff", lambda body, name: Response(200, self.registry.poweroff(name)))
        self._route("DELETE", f"/vms/{_NAME}", lambda body, name: Response(200, self.registry.delete(name)))
        self._route("GET", "/images", lambda body: Response(200, self.images.list_images()))
        self._route("POST", f"/images/{_NAME}/download", self._start_download)
        self._route("GET", f"/images/{_NAME}/download", self._download_status)
        self._route("GET", "/networks", lambda body: Response(200, self.networks.list()))
        self._route("POST", "/networks/default", lambda body: Response(200, self.networks.ensure_default()))

    def handle(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Response:
        method = method.upper()
        path = "/" + path.strip("/")
        for route_method, pattern, handler in self._routes:
            match = pattern.match(path)
            if match is None or route_method != method:
                continue
            try:
                return handler(body, **match.groupdict())
            except ManagerError as exc:
                log("ERROR", f"{method} {path}: {exc}")
                return Response(exc.status, exc.to_dict())
        return Response(404, {"error": f"No route for {method} {path}", "details": None})

    # -- handlers --------------------------------------------------------------

    def _create_vm(self, body: Optional[Dict[str, Any]]) -> Response:
        spec = spec_from_body(body, self.config.network_name)
        record = self.registry.create(spec)
        return Response(200, record.to_dict())

    def _start_download(self, body: Optional[Dict[str, Any]], name: str) -> Response:
        task = self.images.start_download(name)
        return Response(202, task.to_dict())

    def _download_status(self, body: Optional[Dict[str, Any]], name: str) -> Response:
        self.images.resolve(name)
        task = self.images.task(name)
        if task is None:
            raise NotFound(f"No download started for '{name}'")
        return Response(200, task.to_dict())

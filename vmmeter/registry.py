"""VM registry and lifecycle state machine for vmmeter."""

from __future__ import annotations

import shutil
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional

from vmmeter.constants import DOMAIN_NOT_RUNNING_MARKERS
from vmmeter.db import Storage, VirtualMachine
from vmmeter.exceptions import (
    HypervisorCommandFailed,
    InvalidRequest,
    InvalidTransition,
    ManagerError,
    NameConflict,
    NotFound,
    VMActionFailed,
)
from vmmeter.hypervisor import HypervisorAdapter
from vmmeter.images import ImageCache
from vmmeter.models import TRANSITIONS, DomainDefinition, OSImage, VMSpec, VMState
from vmmeter.provisioner import DiskProvisioner
from vmmeter.utils import log, validate_name


def _unlink_quietly(path: Path) -> bool:
    """Remove a file; a missing file counts as removed, other errors are only logged."""
    try:
        path.unlink()
    except FileNotFoundError:
        log("INFO", f"{path} not found, skipping deletion")
        return True
    except OSError as exc:
        log("WARN", f"Could not delete {path}: {exc}")
        return False
    log("INFO", f"Deleted {path}")
    return True


class VMRegistry:
    def __init__(
        self,
        storage: Storage,
        images: ImageCache,
        provisioner: DiskProvisioner,
        hypervisor: HypervisorAdapter,
    ) -> None:
        self.storage = storage
        self.images = images
        self.provisioner = provisioner
        self.hypervisor = hypervisor
        self._locks: Dict[str, threading.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def _name_lock(self, name: str) -> Iterator[None]:
        """Serialise create/delete calls per VM name.

        A name's lock only lives while someone holds or waits on it.
        """
        with self._locks_guard:
            lock = self._locks.setdefault(name, threading.Lock())
            self._lock_users[name] = self._lock_users.get(name, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._locks_guard:
                self._lock_users[name] -= 1
                if not self._lock_users[name]:
                    del self._lock_users[name]
                    del self._locks[name]

    def _transition(self, name: str, target: VMState) -> VirtualMachine:
        record = self.storage.get_vm(name)
        if record is None:
            raise NotFound(f"VM '{name}' is not registered")
        current = VMState(record.state)
        if target is not VMState.DELETING and target not in TRANSITIONS[current]:
            raise InvalidTransition(name, current.value, target.value)
        log("DEBUG", f"VM {name}: {current.value} -> {target.value}")
        return self.storage.update_vm(name, state=target.value)

    # -- validation ------------------------------------------------------------

    def validate(self, spec: VMSpec) -> OSImage:
        """Reject a bad request before anything touches disk or the hypervisor."""
        validate_name(spec.name)
        validate_name(spec.network, "network")
        for field, value in (("memory", spec.memory_mb), ("vcpu", spec.vcpus), ("diskSizeGB", spec.disk_size_gb)):
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise InvalidRequest(f"{field} must be a positive integer (got {value!r})")
        key = (spec.ssh_public_key or "").strip()
        if not key or "\n" in key:
            raise InvalidRequest("ssh must be a single public key line")
        return self.images.resolve(spec.os_key)

    def _domain_exists(self, name: str) -> bool:
        try:
            self.hypervisor.info(name)
        except NotFound:
            return False
        return True

    # -- lifecycle -------------------------------------------------------------

    def create(self, spec: VMSpec) -> VirtualMachine:
        """Register a VM and provision it; returns once the guest has been started.

        On failure the record stays in Failed with the diagnostic text, and
        whatever disk or ISO was already built is left for inspection.
        """
        image = self.validate(spec)
        name = spec.name
        with self._name_lock(name):
            existing = self.storage.get_vm(name)
            if existing is not None:
                if existing.state != VMState.DELETED.value:
                    raise NameConflict(name)
                self.storage.remove_vm(name)
            if self._domain_exists(name):
                raise NameConflict(name)

            self.storage.add_vm(
                VirtualMachine(
                    name=name,
                    user_id=spec.user_id,
                    plan_id=spec.plan_id,
                    state=VMState.PENDING.value,
                    os_key=spec.os_key,
                    disk_path=str(self.provisioner.disk_path(name)),
                    seed_iso_path=str(self.provisioner.seed_iso_path(name)),
                )
            )
            log("INFO", f"VM {name} accepted ({spec.memory_mb} MiB, {spec.vcpus} vCPU, {spec.os_key})")
            self._transition(name, VMState.PROVISIONING)
            try:
                base_image = self.images.ensure_local(spec.os_key)
                artifacts = self.provisioner.provision(base_image, spec, image)
                self.hypervisor.define_and_start(
                    DomainDefinition(
                        name=name,
                        memory_mb=spec.memory_mb,
                        vcpus=spec.vcpus,
                        disk_path=artifacts.disk_path,
                        seed_iso_path=artifacts.seed_iso_path,
                        os_variant=image.variant,
                        network=spec.network,
                    )
                )
            except ManagerError as exc:
                self._fail(name, exc)
                raise
            except Exception as exc:
                error = ManagerError(f"Provisioning {name} failed: {type(exc).__name__}: {exc}")
                self._fail(name, error)
                raise error from exc
            record = self._transition(name, VMState.RUNNING)
            log("SUCCESS", f"VM {name} is running")
            return record

    def _fail(self, name: str, exc: ManagerError) -> None:
        details = exc.to_dict()
        error = details["error"] or ""
        if details.get("details") and details["details"] not in error:
            error = f"{error}\n{details['details']}"
        log("ERROR", f"Provisioning of {name} failed: {exc}")
        self._transition(name, VMState.FAILED)
        self.storage.update_vm(name, error=error)

    def delete(self, name: str) -> Dict[str, object]:
        """Stop, undefine, then reclaim disk. Repeating it is a no-op success."""
        validate_name(name)
        with self._name_lock(name):
            record = self.storage.get_vm(name)
            if record is not None:
                self._transition(name, VMState.DELETING)

            try:
                self.hypervisor.poweroff(name)
                log("INFO", f"VM {name} powered off")
            except NotFound:
                log("INFO", f"VM {name} not defined in hypervisor")
            except HypervisorCommandFailed as exc:
                if not any(marker in exc.stderr.lower() for marker in DOMAIN_NOT_RUNNING_MARKERS):
                    raise
                log("INFO", f"VM {name} already stopped")

            try:
                self.hypervisor.undefine(name)
                log("INFO", f"VM {name} undefined")
            except NotFound:
                log("INFO", f"VM {name} already undefined")

            disk = Path(record.disk_path) if record is not None and record.disk_path else self.provisioner.disk_path(name)
            iso = (
                Path(record.seed_iso_path)
                if record is not None and record.seed_iso_path
                else self.provisioner.seed_iso_path(name)
            )
            disk_removed = _unlink_quietly(disk)
            _unlink_quietly(iso)
            shutil.rmtree(self.provisioner.seed_dir(name), ignore_errors=True)

            if record is not None:
                self._transition(name, VMState.DELETED)
                self.storage.remove_vm(name)
            log("SUCCESS", f"VM {name} deleted")
            return {"name": name, "state": VMState.DELETED.value, "diskRemoved": disk_removed}

    # -- queries ---------------------------------------------------------------

    def record(self, name: str) -> VirtualMachine:
        record = self.storage.get_vm(validate_name(name))
        if record is None:
            raise NotFound(f"VM '{name}' is not registered")
        return record

    def list(self) -> List[Dict[str, object]]:
        records = {record.name: record for record in self.storage.list_vms()}
        rows: List[Dict[str, object]] = []
        for row in self.hypervisor.list_domains():
            entry: Dict[str, object] = dict(row)
            record = records.get(row.get("Name", ""))
            entry["registryState"] = record.state if record is not None else None
            rows.append(entry)
        return rows

    def get(self, name: str) -> Dict[str, object]:
        validate_name(name)
        details: Dict[str, object] = dict(self.hypervisor.info(name))
        try:
            addresses = self.hypervisor.ifaddr(name)
        except HypervisorCommandFailed as exc:
            log("DEBUG", f"No interface addresses for {name}: {exc.stderr}")
            addresses = []
        if addresses:
            details.update(addresses[0])
        record: Optional[VirtualMachine] = self.storage.get_vm(name)
        details["registry"] = record.to_dict() if record is not None else None
        return details

    # -- power -----------------------------------------------------------------

    def _action(self, action: str, call: Callable[[str], str], name: str) -> Dict[str, object]:
        validate_name(name)
        try:
            output = call(name)
        except VMActionFailed:
            raise
        except HypervisorCommandFailed as exc:
            raise VMActionFailed(name, action, exc.command, exc.stderr) from exc
        log("SUCCESS", f"VM {name}: {action} requested")
        return {"name": name, "action": action, "details": output}

    def start(self, name: str) -> Dict[str, object]:
        return self._action("start", self.hypervisor.start, name)

    def shutdown(self, name: str) -> Dict[str, object]:
        return self._action("shut down", self.hypervisor.shutdown, name)

    def poweroff(self, name: str) -> Dict[str, object]:
        return self._action("power off", self.hypervisor.poweroff, name)

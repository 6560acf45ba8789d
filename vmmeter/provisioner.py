"""Overlay disk and cloud-init seed ISO creation for vmmeter."""

from __future__ import annotations

import shutil
import subprocess
import textwrap
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Type

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from vmmeter.constants import COMMAND_TIMEOUT, ISO_TOOLS, MIN_DISK_GB, SEED_VOLUME_ID
from vmmeter.exceptions import CommandFailed, DiskCreateFailed, NoIsoToolAvailable, SeedIsoFailed
from vmmeter.models import OSImage, ProvisionedArtifacts, VMSpec
from vmmeter.utils import ensure_directory, log, run, validate_name


def effective_disk_size(requested_gb: int) -> int:
    """Requests below the floor are raised to it, never rejected."""
    return max(int(requested_gb), MIN_DISK_GB)


def render_user_data(spec: VMSpec, login_user: str) -> str:
    cloud_cfg: Dict[str, object] = {
        "users": [
            {
                "name": login_user,
                "sudo": "ALL=(ALL) NOPASSWD:ALL",
                "groups": "users, admin",
                "home": f"/home/{login_user}",
                "shell": "/bin/bash",
                "lock_passwd": True,
                "ssh_authorized_keys": [spec.ssh_public_key],
            }
        ],
        "hostname": spec.name,
        "manage_etc_hosts": True,
    }
    return "#cloud-config\n" + yaml.safe_dump(cloud_cfg, sort_keys=False, default_flow_style=False)


def render_meta_data(spec: VMSpec) -> str:
    return (
        textwrap.dedent(
            f"""
        instance-id: {spec.name}-instance-01
        local-hostname: {spec.name}
        """
        ).strip()
        + "\n"
    )


class DiskProvisioner:
    def __init__(
        self,
        vm_images_dir: Path,
        seed_root: Path,
        timeout: float = COMMAND_TIMEOUT,
        iso_tools: Sequence[str] = ISO_TOOLS,
        which: Callable[[str], Optional[str]] = shutil.which,
    ) -> None:
        self.vm_images_dir = vm_images_dir
        self.seed_root = seed_root
        self.timeout = timeout
        self.iso_tools = tuple(iso_tools)
        self._which = which

    def disk_path(self, name: str) -> Path:
        return self.vm_images_dir / f"{validate_name(name)}.qcow2"

    def seed_iso_path(self, name: str) -> Path:
        return self.vm_images_dir / f"{validate_name(name)}-cloud-init.iso"

    def seed_dir(self, name: str) -> Path:
        return self.seed_root / validate_name(name)

    def _run_tool(self, cmd: List[str], error_cls: Type[CommandFailed]) -> str:
        try:
            result = run(cmd, timeout=self.timeout)
        except FileNotFoundError as exc:
            raise error_cls(cmd, f"{cmd[0]} not found: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise error_cls(cmd, f"timed out after {self.timeout}s") from exc
        if result.returncode != 0:
            raise error_cls(cmd, (result.stderr or result.stdout or "").strip())
        return (result.stdout or "").strip()

    def create_disk(self, base_image: Path, spec: VMSpec) -> Tuple[Path, int]:
        """Create a fresh qcow2 overlay on ``base_image``. Any existing disk is discarded."""
        size_gb = effective_disk_size(spec.disk_size_gb)
        if size_gb != spec.disk_size_gb:
            log("INFO", f"Requested disk {spec.disk_size_gb}G below minimum; using {size_gb}G")
        disk = self.disk_path(spec.name)
        ensure_directory(disk.parent)
        if disk.exists():
            log("WARN", f"VM disk {disk} already exists. Deleting and recreating.")
            disk.unlink()
        cmd = [
            "qemu-img",
            "create",
            "-f",
            "qcow2",
            "-b",
            str(base_image.resolve()),
            "-F",
            "qcow2",
            str(disk),
            f"{size_gb}G",
        ]
        self._run_tool(cmd, DiskCreateFailed)
        log("SUCCESS", f"Created {size_gb}G overlay {disk} on {base_image.name}")
        return disk, size_gb

    def write_seed(self, spec: VMSpec, login_user: str) -> Path:
        seed = self.seed_dir(spec.name)
        ensure_directory(seed)
        (seed / "user-data").write_text(render_user_data(spec, login_user), encoding="utf-8")
        (seed / "meta-data").write_text(render_meta_data(spec), encoding="utf-8")
        log("INFO", f"Cloud-init data written to {seed}")
        return seed

    def find_iso_tool(self) -> str:
        for tool in self.iso_tools:
            if self._which(tool):
                return tool
            log("DEBUG", f"{tool} not found")
        raise NoIsoToolAvailable(self.iso_tools)

    def build_seed_iso(self, spec: VMSpec, seed: Path) -> Path:
        tool = self.find_iso_tool()
        iso = self.seed_iso_path(spec.name)
        ensure_directory(iso.parent)
        if iso.exists():
            log("WARN", f"Cloud-init ISO {iso} already exists. Deleting and recreating.")
            iso.unlink()
        cmd = [
            tool,
            "-output",
            str(iso),
            "-volid",
            SEED_VOLUME_ID,
            "-joliet",
            "-rock",
            str(seed / "user-data"),
            str(seed / "meta-data"),
        ]
        self._run_tool(cmd, SeedIsoFailed)
        log("SUCCESS", f"Seed ISO {iso} built with {tool}")
        return iso

    def provision(self, base_image: Path, spec: VMSpec, image: OSImage) -> ProvisionedArtifacts:
        disk, size_gb = self.create_disk(base_image, spec)
        seed = self.write_seed(spec, image.login_user)
        iso = self.build_seed_iso(spec, seed)
        return ProvisionedArtifacts(disk_path=disk, seed_iso_path=iso, disk_size_gb=size_gb, seed_dir=seed)

"""Data models for vmmeter."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, Optional

from vmmeter.constants import DEFAULT_USER


class VMState(str, Enum):
    PENDING = "Pending"
    PROVISIONING = "Provisioning"
    RUNNING = "Running"
    FAILED = "Failed"
    DELETING = "Deleting"
    DELETED = "Deleted"


# Any state may also move to DELETING; see VMRegistry._transition.
TRANSITIONS: Dict[VMState, frozenset] = {
    VMState.PENDING: frozenset({VMState.PROVISIONING}),
    VMState.PROVISIONING: frozenset({VMState.RUNNING, VMState.FAILED}),
    VMState.RUNNING: frozenset(),
    VMState.FAILED: frozenset(),
    VMState.DELETING: frozenset({VMState.DELETED}),
    VMState.DELETED: frozenset(),
}


@dataclass(frozen=True)
class OSImage:
    key: str
    url: str
    filename: str
    variant: str
    name: str = ""
    login_user: str = DEFAULT_USER


@dataclass
class VMSpec:
    name: str
    memory_mb: int
    vcpus: int
    disk_size_gb: int
    os_key: str
    network: str
    ssh_public_key: str
    user_id: Optional[str] = None
    plan_id: Optional[int] = None


@dataclass
class DomainDefinition:
    """Everything virt-install needs to define and boot one guest."""

    name: str
    memory_mb: int
    vcpus: int
    disk_path: Path
    seed_iso_path: Path
    os_variant: str
    network: str


@dataclass
class CpuStats:
    user: int
    system: int


@dataclass
class MemStats:
    actual: int  # KiB
    swap_in: int


@dataclass(frozen=True)
class BillingWindow:
    """Half-open interval ``[start, end)``."""

    start: datetime
    end: datetime

    def __contains__(self, moment: datetime) -> bool:
        return self.start <= moment < self.end


@dataclass
class InvoiceFigures:
    cpu_hours: int
    avg_memory_gib: float
    total_memory_gib: float
    cost: float

    def summary(self) -> Dict[str, float]:
        # Sum, not mean; the cost uses the mean. Both are kept as billed.
        return {"cpuHours": self.cpu_hours, "totalMemoryGiB": self.total_memory_gib}


@dataclass
class ProvisionedArtifacts:
    disk_path: Path
    seed_iso_path: Path
    disk_size_gb: int
    seed_dir: Path

"""Periodic usage sampling of running guests."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from vmmeter.db import Storage, UsageSample
from vmmeter.exceptions import HypervisorCommandFailed, InvalidRequest, NotFound
from vmmeter.hypervisor import HypervisorAdapter
from vmmeter.utils import log, utcnow


class UsageSampler:
    def __init__(self, hypervisor: HypervisorAdapter, storage: Storage) -> None:
        self.hypervisor = hypervisor
        self.storage = storage

    def sample_one(self, name: str, timestamp: datetime) -> UsageSample:
        cpu = self.hypervisor.cpu_stats(name)
        mem = self.hypervisor.mem_stats(name)
        return UsageSample(
            vm_name=name,
            timestamp=timestamp,
            cpu_user=cpu.user,
            cpu_system=cpu.system,
            memory_actual=mem.actual,
            memory_swap_in=mem.swap_in,
        )

    def run(self, now: Optional[datetime] = None) -> List[UsageSample]:
        """Take one sample per running guest and store them together.

        A guest that vanishes or errors between listing and reading is
        skipped; the rest of the pass is still written.
        """
        timestamp = now or utcnow()
        names = self.hypervisor.list_running()
        samples: List[UsageSample] = []
        for name in names:
            try:
                samples.append(self.sample_one(name, timestamp))
            except (NotFound, HypervisorCommandFailed, InvalidRequest) as exc:
                log("WARN", f"Skipping usage sample for {name}: {exc}")
        self.storage.add_usage_samples(samples)
        log("INFO", f"Recorded {len(samples)} usage sample(s) for {len(names)} running VM(s)")
        return samples

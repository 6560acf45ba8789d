"""virsh / virt-install wrapper for vmmeter.

Every call shells out once, captures stdout and turns any failure into a
typed error carrying the raw diagnostic text. Nothing here retries.
"""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Dict, List, Optional

from vmmeter.constants import COMMAND_TIMEOUT, DEFAULT_GRAPHICS, DEFAULT_LIBVIRT_URI, DOMAIN_MISSING_MARKERS
from vmmeter.exceptions import HypervisorCommandFailed, NotFound
from vmmeter.models import CpuStats, DomainDefinition, MemStats
from vmmeter.tabular import parse_key_values, parse_table
from vmmeter.utils import log, run, validate_name


def _to_int(raw: Optional[str]) -> int:
    if not raw:
        return 0
    try:
        return int(raw.split()[0])
    except ValueError:
        return 0


class HypervisorAdapter:
    def __init__(
        self,
        uri: str = DEFAULT_LIBVIRT_URI,
        timeout: float = COMMAND_TIMEOUT,
        graphics: str = DEFAULT_GRAPHICS,
    ) -> None:
        self.uri = uri
        self.timeout = timeout
        self.graphics = graphics

    # -- plumbing ----------------------------------------------------------

    def _execute(self, cmd: List[str], domain: Optional[str] = None) -> str:
        try:
            result = run(cmd, timeout=self.timeout)
        except FileNotFoundError as exc:
            raise HypervisorCommandFailed(cmd, f"{cmd[0]} not found: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise HypervisorCommandFailed(cmd, f"timed out after {self.timeout}s") from exc
        if result.returncode != 0:
            stderr = (result.stderr or result.stdout or "").strip()
            if domain is not None and any(marker in stderr.lower() for marker in DOMAIN_MISSING_MARKERS):
                raise NotFound(f"Domain '{domain}' not found: {stderr}")
            log("ERROR", f"Command failed ({result.returncode}): {' '.join(cmd)}")
            raise HypervisorCommandFailed(cmd, stderr)
        return (result.stdout or "").strip()

    def virsh(self, *args: str, domain: Optional[str] = None) -> str:
        return self._execute(["virsh", "-c", self.uri, *args], domain=domain)

    # -- domains -------------------------------------------------------------

    def define_and_start(self, definition: DomainDefinition) -> str:
        """Define and boot a guest in one virt-install call.

        A domain that gets defined but fails to boot is reported exactly like
        a total failure.
        """
        validate_name(definition.name)
        validate_name(definition.network, "network")
        cmd = [
            "virt-install",
            "--connect",
            self.uri,
            "--name",
            definition.name,
            "--memory",
            str(definition.memory_mb),
            "--vcpus",
            str(definition.vcpus),
            "--disk",
            f"path={definition.disk_path},device=disk,bus=virtio,format=qcow2",
            "--disk",
            f"path={definition.seed_iso_path},device=cdrom",
            "--os-variant",
            definition.os_variant,
            "--virt-type",
            "kvm",
            "--graphics",
            self.graphics,
            "--network",
            f"network={definition.network},model=virtio",
            "--import",
            "--noautoconsole",
        ]
        output = self._execute(cmd)
        log("SUCCESS", f"Domain {definition.name} defined and started")
        return output

    def list_domains(self, all_domains: bool = True) -> List[Dict[str, str]]:
        args = ["list", "--all"] if all_domains else ["list"]
        return parse_table(self.virsh(*args))

    def list_running(self) -> List[str]:
        output = self.virsh("list", "--name", "--state-running")
        return [line.strip() for line in output.splitlines() if line.strip()]

    def info(self, name: str) -> Dict[str, str]:
        validate_name(name)
        return parse_key_values(self.virsh("dominfo", name, domain=name))

    def ifaddr(self, name: str) -> List[Dict[str, str]]:
        validate_name(name)
        return parse_table(self.virsh("domifaddr", name, domain=name))

    def cpu_stats(self, name: str) -> CpuStats:
        validate_name(name)
        values = parse_key_values(self.virsh("domstats", name, "--cpu-total", domain=name))
        return CpuStats(
            user=_to_int(values.get("cpu.user", values.get("cpu.total.user"))),
            system=_to_int(values.get("cpu.system", values.get("cpu.total.system"))),
        )

    def mem_stats(self, name: str) -> MemStats:
        validate_name(name)
        # dommemstat prints "actual 1048576"; older builds print "actual=1048576".
        values = parse_key_values(self.virsh("dommemstat", name, domain=name), separators=":= ")
        return MemStats(actual=_to_int(values.get("actual")), swap_in=_to_int(values.get("swap_in")))

    def start(self, name: str) -> str:
        return self.virsh("start", validate_name(name), domain=name)

    def shutdown(self, name: str) -> str:
        return self.virsh("shutdown", validate_name(name), domain=name)

    def poweroff(self, name: str) -> str:
        return self.virsh("destroy", validate_name(name), domain=name)

    def undefine(self, name: str) -> str:
        return self.virsh("undefine", validate_name(name), domain=name)

    # -- networks ------------------------------------------------------------

    def net_list(self) -> List[Dict[str, str]]:
        return parse_table(self.virsh("net-list", "--all"))

    def net_define(self, xml_path: Path) -> str:
        return self.virsh("net-define", str(xml_path))

    def net_start(self, name: str) -> str:
        return self.virsh("net-start", validate_name(name, "network"))

    def net_autostart(self, name: str) -> str:
        return self.virsh("net-autostart", validate_name(name, "network"))

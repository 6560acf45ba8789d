"""Default NAT network definition for vmmeter."""

from __future__ import annotations

import uuid
from typing import Dict, List, Optional
from xml.etree.ElementTree import Element, SubElement, tostring

from vmmeter.constants import NETWORK_ACTIVE_MARKERS, NETWORK_EXISTS_MARKERS
from vmmeter.exceptions import HypervisorCommandFailed
from vmmeter.hypervisor import HypervisorAdapter
from vmmeter.utils import ensure_directory, log, validate_name


def _element_to_str(root: Element) -> str:
    """Serialize an ElementTree element to a pretty-printed XML string without declaration."""
    from xml.dom.minidom import parseString

    raw = tostring(root, encoding="unicode")
    return parseString(raw).documentElement.toprettyxml(indent="  ").strip()


def render_nat_network_xml(
    name: str,
    network_uuid: Optional[str] = None,
    gateway: str = "192.168.122.1",
    netmask: str = "255.255.255.0",
    dhcp_start: str = "192.168.122.2",
    dhcp_end: str = "192.168.122.254",
) -> str:
    """Render a libvirt NAT network with a DHCP range."""
    validate_name(name, "network")
    network = Element("network")
    SubElement(network, "name").text = name
    SubElement(network, "uuid").text = network_uuid or str(uuid.uuid4())
    forward = SubElement(network, "forward", mode="nat")
    nat = SubElement(forward, "nat")
    SubElement(nat, "address", start=dhcp_start, end=dhcp_end)
    ip = SubElement(network, "ip", address=gateway, netmask=netmask)
    dhcp = SubElement(ip, "dhcp")
    SubElement(dhcp, "range", start=dhcp_start, end=dhcp_end)
    return _element_to_str(network)


def _stderr_has(exc: HypervisorCommandFailed, markers) -> bool:
    text = exc.stderr.lower()
    return any(marker in text for marker in markers)


class NetworkManager:
    def __init__(self, hypervisor: HypervisorAdapter, state_dir, default_name: str) -> None:
        self.hypervisor = hypervisor
        self.state_dir = state_dir
        self.default_name = validate_name(default_name, "network")

    def list(self) -> List[Dict[str, str]]:
        return self.hypervisor.net_list()

    def ensure_default(self) -> List[Dict[str, str]]:
        """Define, start and autostart the default NAT network. Safe to repeat."""
        name = self.default_name
        xml_path = self.state_dir / "networks" / f"{name}.xml"
        if xml_path.exists():
            log("INFO", f"Network XML already present at {xml_path}")
        else:
            ensure_directory(xml_path.parent)
            xml_path.write_text(render_nat_network_xml(name) + "\n", encoding="utf-8")
            log("INFO", f"Network XML written to {xml_path}")

        try:
            self.hypervisor.net_define(xml_path)
            log("SUCCESS", f"Network {name} defined")
        except HypervisorCommandFailed as exc:
            if not _stderr_has(exc, NETWORK_EXISTS_MARKERS):
                raise
            log("WARN", f"Network {name} already exists")

        try:
            self.hypervisor.net_start(name)
            log("SUCCESS", f"Network {name} started")
        except HypervisorCommandFailed as exc:
            if not _stderr_has(exc, NETWORK_ACTIVE_MARKERS):
                raise
            log("INFO", f"Network {name} already active")

        self.hypervisor.net_autostart(name)
        log("SUCCESS", f"Network {name} set to autostart")
        return self.hypervisor.net_list()

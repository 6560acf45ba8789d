"""Tests for vmmeter.network module."""

from __future__ import annotations

import pytest

from vmmeter.exceptions import HypervisorCommandFailed, InvalidRequest
from vmmeter.network import NetworkManager, render_nat_network_xml


class TestRenderNatNetworkXml:
    def test_defaults(self):
        xml = render_nat_network_xml("myfreenetwork", network_uuid="1234")
        assert xml.startswith("<network>")
        assert "<name>myfreenetwork</name>" in xml
        assert "<uuid>1234</uuid>" in xml
        assert '<forward mode="nat">' in xml
        assert '<ip address="192.168.122.1" netmask="255.255.255.0">' in xml
        assert '<range start="192.168.122.2" end="192.168.122.254"/>' in xml

    def test_custom_range(self):
        xml = render_nat_network_xml("lab", gateway="10.0.0.1", dhcp_start="10.0.0.10", dhcp_end="10.0.0.20")
        assert '<ip address="10.0.0.1"' in xml
        assert '<range start="10.0.0.10" end="10.0.0.20"/>' in xml

    def test_rejects_bad_name(self):
        with pytest.raises(InvalidRequest):
            render_nat_network_xml("bad name")


class TestNetworkManager:
    def test_ensure_default_from_scratch(self, fake_hypervisor, tmp_path):
        fake_hypervisor.net_list.return_value = [{"Name": "myfreenetwork", "State": "active"}]
        manager = NetworkManager(fake_hypervisor, tmp_path, "myfreenetwork")
        rows = manager.ensure_default()
        xml_path = tmp_path / "networks" / "myfreenetwork.xml"
        assert xml_path.exists()
        fake_hypervisor.net_define.assert_called_once_with(xml_path)
        fake_hypervisor.net_start.assert_called_once_with("myfreenetwork")
        fake_hypervisor.net_autostart.assert_called_once_with("myfreenetwork")
        assert rows == [{"Name": "myfreenetwork", "State": "active"}]

    def test_ensure_default_is_repeatable(self, fake_hypervisor, tmp_path):
        fake_hypervisor.net_define.side_effect = HypervisorCommandFailed(
            ["virsh", "net-define"], "error: operation failed: network 'myfreenetwork' already exists"
        )
        fake_hypervisor.net_start.side_effect = HypervisorCommandFailed(
            ["virsh", "net-start"], "error: Requested operation is not valid: network is already active"
        )
        manager = NetworkManager(fake_hypervisor, tmp_path, "myfreenetwork")
        manager.ensure_default()
        manager.ensure_default()
        assert fake_hypervisor.net_autostart.call_count == 2

    def test_other_define_errors_propagate(self, fake_hypervisor, tmp_path):
        fake_hypervisor.net_define.side_effect = HypervisorCommandFailed(["virsh"], "permission denied")
        with pytest.raises(HypervisorCommandFailed):
            NetworkManager(fake_hypervisor, tmp_path, "myfreenetwork").ensure_default()
        fake_hypervisor.net_start.assert_not_called()

    def test_list(self, fake_hypervisor, tmp_path):
        fake_hypervisor.net_list.return_value = []
        assert NetworkManager(fake_hypervisor, tmp_path, "default").list() == []

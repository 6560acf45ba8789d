"""Tests for vmmeter.provisioner module."""

from __future__ import annotations

import subprocess
from unittest.mock import patch

import pytest
import yaml

from vmmeter.exceptions import DiskCreateFailed, NoIsoToolAvailable, SeedIsoFailed
from vmmeter.provisioner import DiskProvisioner, effective_disk_size, render_meta_data, render_user_data


def _ok() -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(args=[], returncode=0, stdout="", stderr="")


@pytest.fixture
def provisioner(tmp_path) -> DiskProvisioner:
    return DiskProvisioner(tmp_path / "vms", tmp_path / "seed", timeout=10, which=lambda tool: f"/usr/bin/{tool}")


class TestDiskSize:
    @pytest.mark.parametrize("requested,expected", [(5, 20), (20, 20), (1, 20), (50, 50)])
    def test_floor(self, requested, expected):
        assert effective_disk_size(requested) == expected


class TestRenderSeed:
    def test_user_data_is_cloud_config(self, vm_spec):
        text = render_user_data(vm_spec, "ubuntu")
        assert text.startswith("#cloud-config\n")
        data = yaml.safe_load(text)
        user = data["users"][0]
        assert user["name"] == "ubuntu"
        assert user["sudo"] == "ALL=(ALL) NOPASSWD:ALL"
        assert user["lock_passwd"] is True
        assert user["ssh_authorized_keys"] == [vm_spec.ssh_public_key]
        assert data["hostname"] == "vm1"
        assert data["manage_etc_hosts"] is True

    def test_user_data_escapes_key_content(self, vm_spec):
        vm_spec.ssh_public_key = "ssh-rsa AAAA: evil: yes"
        data = yaml.safe_load(render_user_data(vm_spec, "ubuntu"))
        assert data["users"][0]["ssh_authorized_keys"] == ["ssh-rsa AAAA: evil: yes"]

    def test_meta_data(self, vm_spec):
        assert render_meta_data(vm_spec) == "instance-id: vm1-instance-01\nlocal-hostname: vm1\n"


class TestCreateDisk:
    def test_raises_small_disk_to_floor(self, provisioner, vm_spec, tmp_path):
        base = tmp_path / "base.img"
        with patch("vmmeter.provisioner.run", return_value=_ok()) as mock_run:
            disk, size = provisioner.create_disk(base, vm_spec)
        assert size == 20
        assert disk == tmp_path / "vms" / "vm1.qcow2"
        cmd = mock_run.call_args[0][0]
        assert cmd[:4] == ["qemu-img", "create", "-f", "qcow2"]
        assert cmd[cmd.index("-b") + 1] == str(base.resolve())
        assert cmd[cmd.index("-F") + 1] == "qcow2"
        assert cmd[-2:] == [str(disk), "20G"]

    def test_existing_disk_is_replaced(self, provisioner, vm_spec, tmp_path):
        stale = provisioner.disk_path("vm1")
        stale.parent.mkdir(parents=True)
        stale.write_bytes(b"old")
        with patch("vmmeter.provisioner.run", return_value=_ok()):
            provisioner.create_disk(tmp_path / "base.img", vm_spec)
        assert not stale.exists()

    def test_failure_carries_stderr(self, provisioner, vm_spec, tmp_path):
        failed = subprocess.CompletedProcess(args=[], returncode=1, stdout="", stderr="qemu-img: no space\n")
        with patch("vmmeter.provisioner.run", return_value=failed):
            with pytest.raises(DiskCreateFailed) as exc:
                provisioner.create_disk(tmp_path / "base.img", vm_spec)
        assert exc.value.stderr == "qemu-img: no space"
        assert exc.value.command[0] == "qemu-img"


class TestSeedIso:
    def test_prefers_first_available_tool(self, tmp_path):
        prov = DiskProvisioner(tmp_path, tmp_path, which=lambda tool: "/bin/mkisofs" if tool == "mkisofs" else None)
        assert prov.find_iso_tool() == "mkisofs"

    def test_no_tool(self, tmp_path):
        prov = DiskProvisioner(tmp_path, tmp_path, which=lambda tool: None)
        with pytest.raises(NoIsoToolAvailable, match="genisoimage, mkisofs"):
            prov.find_iso_tool()

    def test_build_command(self, provisioner, vm_spec):
        seed = provisioner.write_seed(vm_spec, "ubuntu")
        assert (seed / "user-data").exists()
        assert (seed / "meta-data").exists()
        with patch("vmmeter.provisioner.run", return_value=_ok()) as mock_run:
            iso = provisioner.build_seed_iso(vm_spec, seed)
        cmd = mock_run.call_args[0][0]
        assert cmd[0] == "genisoimage"
        assert cmd[cmd.index("-output") + 1] == str(iso)
        assert cmd[cmd.index("-volid") + 1] == "cidata"
        assert "-joliet" in cmd and "-rock" in cmd
        assert cmd[-2:] == [str(seed / "user-data"), str(seed / "meta-data")]

    def test_build_failure(self, provisioner, vm_spec):
        seed = provisioner.write_seed(vm_spec, "ubuntu")
        failed = subprocess.CompletedProcess(args=[], returncode=2, stdout="", stderr="bad\n")
        with patch("vmmeter.provisioner.run", return_value=failed):
            with pytest.raises(SeedIsoFailed, match="bad"):
                provisioner.build_seed_iso(vm_spec, seed)


class TestProvision:
    def test_returns_artifacts(self, provisioner, vm_spec, catalog, tmp_path):
        with patch("vmmeter.provisioner.run", return_value=_ok()) as mock_run:
            artifacts = provisioner.provision(tmp_path / "base.img", vm_spec, catalog["ubuntu22"])
        assert mock_run.call_count == 2
        assert artifacts.disk_size_gb == 20
        assert artifacts.disk_path.name == "vm1.qcow2"
        assert artifacts.seed_iso_path.name == "vm1-cloud-init.iso"
        assert artifacts.seed_dir == tmp_path / "seed" / "vm1"

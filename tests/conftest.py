"""Shared test fixtures."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from vmmeter.config import EngineConfig, load_os_catalog
from vmmeter.constants import DEFAULT_CATALOG_PATH
from vmmeter.db import Storage
from vmmeter.hypervisor import HypervisorAdapter
from vmmeter.models import VMSpec


@pytest.fixture
def engine_config(tmp_path) -> EngineConfig:
    """Return an EngineConfig rooted in the test's temp directory."""
    return EngineConfig(
        data_dir=tmp_path / "data",
        database_url=f"sqlite:///{tmp_path / 'test.db'}",
        catalog_path=DEFAULT_CATALOG_PATH,
    )


@pytest.fixture
def storage(tmp_path):
    store = Storage(f"sqlite:///{tmp_path / 'vm_billing.db'}")
    store.create_schema()
    yield store
    store.dispose()


@pytest.fixture
def catalog():
    return load_os_catalog()


@pytest.fixture
def fake_hypervisor() -> MagicMock:
    """A hypervisor adapter that never shells out."""
    return MagicMock(spec=HypervisorAdapter)


@pytest.fixture
def vm_spec() -> VMSpec:
    return VMSpec(
        name="vm1",
        memory_mb=2048,
        vcpus=2,
        disk_size_gb=5,
        os_key="ubuntu22",
        network="default",
        ssh_public_key="ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIExample test@host",
        user_id="user-1",
    )

"""Global constants for vmmeter."""

from __future__ import annotations

import re
from pathlib import Path

PACKAGE_DIR = Path(__file__).resolve().parent
DEFAULT_CATALOG_PATH = PACKAGE_DIR / "catalog.yaml"
DEFAULT_DATA_DIR = Path("/var/lib/vmmeter")
DEFAULT_LIBVIRT_URI = "qemu:///system"
DEFAULT_NETWORK_NAME = "myfreenetwork"
DEFAULT_GRAPHICS = "vnc,listen=0.0.0.0"

TRUTHY = {"1", "true", "yes", "on"}

# Caller-controlled strings reach command lines; only these survive.
NAME_RE = re.compile(r"[A-Za-z0-9-]+")  # use with fullmatch

MIN_DISK_GB = 20
DEFAULT_USER = "ubuntu"
SEED_VOLUME_ID = "cidata"
ISO_TOOLS = ("genisoimage", "mkisofs")

DOWNLOAD_TIMEOUT = 300
COMMAND_TIMEOUT = 120
SAMPLE_INTERVAL = 3600

KIB_PER_GIB = 1024 * 1024

# virsh stderr fragments that mean "there is no such domain"
DOMAIN_MISSING_MARKERS = (
    "failed to get domain",
    "domain not found",
    "no domain with matching name",
)
DOMAIN_NOT_RUNNING_MARKERS = (
    "domain is not running",
)
NETWORK_EXISTS_MARKERS = ("already exists",)
NETWORK_ACTIVE_MARKERS = ("already active", "is already running")

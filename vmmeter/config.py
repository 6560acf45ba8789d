"""Configuration loading and environment variable parsing for vmmeter."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from vmmeter.constants import (
    COMMAND_TIMEOUT,
    DEFAULT_CATALOG_PATH,
    DEFAULT_DATA_DIR,
    DEFAULT_GRAPHICS,
    DEFAULT_LIBVIRT_URI,
    DEFAULT_NETWORK_NAME,
    DEFAULT_USER,
    DOWNLOAD_TIMEOUT,
    SAMPLE_INTERVAL,
)
from vmmeter.exceptions import ManagerError
from vmmeter.models import OSImage
from vmmeter.utils import get_env, parse_int_env, validate_name


@dataclass(frozen=True)
class EngineConfig:
    data_dir: Path
    database_url: str
    catalog_path: Path
    libvirt_uri: str = DEFAULT_LIBVIRT_URI
    network_name: str = DEFAULT_NETWORK_NAME
    graphics: str = DEFAULT_GRAPHICS
    download_timeout: int = DOWNLOAD_TIMEOUT
    command_timeout: int = COMMAND_TIMEOUT
    sample_interval: int = SAMPLE_INTERVAL

    @property
    def base_images_dir(self) -> Path:
        return self.data_dir / "base"

    @property
    def vm_images_dir(self) -> Path:
        return self.data_dir / "vms"

    @property
    def seed_dir(self) -> Path:
        return self.data_dir / "cloud-init"

    @property
    def state_dir(self) -> Path:
        return self.data_dir / "state"


def load_config() -> EngineConfig:
    data_dir = Path(get_env("DATA_DIR") or str(DEFAULT_DATA_DIR))
    database_url = get_env("DATABASE_URL") or f"sqlite:///{data_dir / 'vm_billing.db'}"
    catalog_path = Path(get_env("OS_CATALOG") or str(DEFAULT_CATALOG_PATH))
    network_name = validate_name(get_env("NETWORK_NAME", DEFAULT_NETWORK_NAME), "NETWORK_NAME")
    return EngineConfig(
        data_dir=data_dir,
        database_url=database_url,
        catalog_path=catalog_path,
        libvirt_uri=get_env("LIBVIRT_URI", DEFAULT_LIBVIRT_URI) or DEFAULT_LIBVIRT_URI,
        network_name=network_name,
        graphics=(get_env("GRAPHICS") or DEFAULT_GRAPHICS).strip(),
        download_timeout=parse_int_env("DOWNLOAD_TIMEOUT", str(DOWNLOAD_TIMEOUT)),
        command_timeout=parse_int_env("COMMAND_TIMEOUT", str(COMMAND_TIMEOUT)),
        sample_interval=parse_int_env("SAMPLE_INTERVAL", str(SAMPLE_INTERVAL), min_val=60),
    )


def load_os_catalog(config_path: Optional[Path] = None) -> Dict[str, OSImage]:
    """Read the OS image catalog. The result is treated as immutable."""
    if config_path is None:
        config_path = DEFAULT_CATALOG_PATH
    if not config_path.exists():
        raise ManagerError(f"OS catalog missing: {config_path}")
    data = yaml.safe_load(config_path.read_text()) or {}
    if not isinstance(data, dict):
        raise ManagerError(f"OS catalog {config_path} must be a mapping")
    entries = data.get("images") or {}
    if not isinstance(entries, dict):
        raise ManagerError(f"OS catalog {config_path}: 'images' must be a mapping")

    catalog: Dict[str, OSImage] = {}
    for key, info in entries.items():
        key = str(key)
        if not isinstance(info, dict):
            raise ManagerError(f"OS catalog entry '{key}' must be a mapping")
        missing = [field for field in ("url", "filename", "variant") if not info.get(field)]
        if missing:
            raise ManagerError(f"OS catalog entry '{key}' is missing: {', '.join(missing)}")
        filename = str(info["filename"])
        if Path(filename).name != filename:
            raise ManagerError(f"OS catalog entry '{key}': filename must not contain a path")
        catalog[key] = OSImage(
            key=key,
            url=str(info["url"]),
            filename=filename,
            variant=str(info["variant"]),
            name=str(info.get("name", key)),
            login_user=str(info.get("user", DEFAULT_USER)),
        )
    return catalog

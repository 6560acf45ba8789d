"""vmmeter package."""

__all__ = [
    "api",
    "billing",
    "cli",
    "config",
    "constants",
    "db",
    "exceptions",
    "hypervisor",
    "images",
    "models",
    "network",
    "provisioner",
    "registry",
    "sampler",
    "scheduler",
    "tabular",
    "utils",
]

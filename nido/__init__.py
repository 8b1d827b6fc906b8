"""nido package."""

__all__ = [
    "catalog",
    "checksum",
    "cli",
    "cloud_init",
    "config",
    "constants",
    "downloader",
    "exceptions",
    "models",
    "ports",
    "process",
    "qmp",
    "runtime",
    "state",
    "utils",
    "vm",
]

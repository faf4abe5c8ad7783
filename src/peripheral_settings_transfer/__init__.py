"""Core package for transferring per-device settings between device records."""

__all__ = [
    "backup",
    "catalog",
    "cli",
    "codec",
    "config",
    "coordinator",
    "errors",
    "graph",
    "logging",
    "rewriter",
    "store",
    "transfer",
]
__version__ = "1.0.0"

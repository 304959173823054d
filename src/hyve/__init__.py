"""hyve: run a workspace's dev services in dependency order on per-workspace ports."""

__version__ = "0.3.0"

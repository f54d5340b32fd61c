"""Horizon — build, run, verify, and clean up the containerized coding workload."""

__version__ = "0.1.0"

"""Transparent proxy manager that routes traffic per cgroup with nftables."""

__version__ = "0.3.2"
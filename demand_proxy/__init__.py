"""Stratum V1 mining proxy components: configuration, miner ingress, statistics and a status API."""

__version__ = "0.2.1"

__all__ = ["api", "config", "ingress", "stats", "system"]
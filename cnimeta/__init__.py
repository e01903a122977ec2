"""Chained CNI plugins: portmap, bandwidth, flannel, tuning and a sample pass-through."""

__version__ = "0.1.0"

__all__ = ["__version__"]
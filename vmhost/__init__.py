"""vmhost - single-node control plane for hypervisor-backed virtual machines."""

__version__ = "1.0.0"

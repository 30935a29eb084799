"""Hypervisor process configuration and supervision."""

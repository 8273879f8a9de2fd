"""virtlab - environment-driven KVM/libvirt VM lifecycle automation."""

__version__ = "0.1.0"

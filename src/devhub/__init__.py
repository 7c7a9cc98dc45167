"""DevHub control plane: warm pool, sessions and file sync for dev VMs."""

__version__ = "0.1.0"

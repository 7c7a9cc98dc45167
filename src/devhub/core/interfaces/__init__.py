"""Core interfaces for the control plane."""

from devhub.core.interfaces.agent import InstanceAgent
from devhub.core.interfaces.file_store import FileStore, ProjectFile
from devhub.core.interfaces.machine import (
    TERMINAL_STATES,
    ExecResult,
    Machine,
    MachineProvider,
    MachineSpec,
    MachineState,
)
from devhub.core.interfaces.session_store import Session, SessionStore

__all__ = [
    # Machine provider
    "MachineProvider",
    "Machine",
    "MachineSpec",
    "MachineState",
    "ExecResult",
    "TERMINAL_STATES",
    # Agent
    "InstanceAgent",
    # Storage
    "FileStore",
    "ProjectFile",
    "SessionStore",
    "Session",
]

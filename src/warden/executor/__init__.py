"""Executor module for remote command execution."""

from warden.executor.base import CommandOutput, Transport, TransportFactory
from warden.executor.ssh import SSHTransport

__all__ = [
    "CommandOutput",
    "SSHTransport",
    "Transport",
    "TransportFactory",
]

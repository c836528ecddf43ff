# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/seadeploy/errors.py

from __future__ import annotations

from typing import Any, Dict, Optional


class SeaDeployError(RuntimeError):
    """Base class for every failure raised by seadeploy."""

    code = "SEADEPLOY_ERROR"

    def __init__(
        self,
        message: str,
        *,
        cause: Optional[BaseException] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.context: Dict[str, Any] = dict(context or {})

    def __str__(self) -> str:
        if self.cause is not None:
            return f"{self.message}: {self.cause}"
        return self.message


# ---------------------------------------------------------------------
# Transport: retryable at the task group layer
# ---------------------------------------------------------------------
class TransportError(SeaDeployError):
    """Connection, authentication or timeout failure talking to a host."""

    code = "TRANSPORT_ERROR"


class ExecutorConnectionError(TransportError):
    code = "SSH_CONNECTION_FAILED"

    def __init__(self, host: str, port: int, user: str, message: str = "", **kw):
        super().__init__(
            message or f"failed to connect to {user}@{host}:{port}",
            context={"host": host, "port": port, "user": user},
            **kw,
        )
        self.host = host
        self.port = port
        self.user = user


class ExecutorTimeoutError(TransportError):
    code = "COMMAND_TIMEOUT"

    def __init__(self, host: str, command: str, timeout: float):
        super().__init__(
            f"command timed out after {timeout:g}s on {host}",
            context={"host": host, "command": command, "timeout": timeout},
        )
        self.host = host
        self.command = command
        self.timeout = timeout


class RemoteCommandError(SeaDeployError):
    """A command ran but did not succeed."""

    code = "COMMAND_FAILED"


class CommandFailedError(RemoteCommandError):
    """Non-zero exit. ``output`` keeps the combined stdout/stderr for diagnostics."""

    def __init__(self, host: str, command: str, exit_status: int, output: str):
        super().__init__(
            f"command failed on {host} (exit {exit_status}): {command}",
            context={"host": host, "command": command, "exit_status": exit_status},
        )
        self.host = host
        self.command = command
        self.exit_status = exit_status
        self.output = output


# ---------------------------------------------------------------------
# Preconditions: never retried
# ---------------------------------------------------------------------
class PreconditionError(SeaDeployError):
    code = "PRECONDITION_FAILED"


class ComponentNotInstalledError(PreconditionError):
    code = "COMPONENT_NOT_INSTALLED"

    def __init__(self, name: str, version: str):
        super().__init__(
            f"{name} {version} is not installed in the registry",
            context={"component": name, "version": version},
        )
        self.name = name
        self.version = version


class PortConflictError(PreconditionError):
    code = "PORT_CONFLICT"


class UnhealthyClusterError(PreconditionError):
    code = "CLUSTER_UNHEALTHY"


# ---------------------------------------------------------------------
# Provisioning / verification
# ---------------------------------------------------------------------
class ProvisioningError(SeaDeployError):
    """Disk format, UUID read or mount failure on one host."""

    code = "PROVISIONING_FAILED"


class VerificationError(SeaDeployError):
    """Post-action health or version check failed."""

    code = "VERIFICATION_FAILED"


class OperationCancelled(SeaDeployError):
    code = "CANCELLED"


class ConfigurationError(SeaDeployError):
    code = "INVALID_CONFIGURATION"


class ClusterOperationError(SeaDeployError):
    code = "CLUSTER_OPERATION_FAILED"


class PhaseFailedError(ClusterOperationError):
    """A phase failed; ``rollback_error`` is set when its rollback failed too."""

    def __init__(
        self,
        phase: str,
        task_id: Optional[str],
        error: BaseException,
        rollback_error: Optional[BaseException] = None,
    ):
        where = f"phase {phase!r}"
        if task_id:
            where += f" task {task_id!r}"
        if rollback_error is not None:
            message = f"task group failed and rollback failed: {where}: {error} (rollback error: {rollback_error})"
        else:
            message = f"task group failed: {where}: {error}"
        super().__init__(message, context={"phase": phase, "task_id": task_id})
        self.phase = phase
        self.task_id = task_id
        self.error = error
        self.rollback_error = rollback_error

    def __str__(self) -> str:
        return self.message

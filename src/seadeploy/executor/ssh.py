# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/seadeploy/executor/ssh.py

from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional

import paramiko

from seadeploy.errors import (
    CommandFailedError,
    ExecutorConnectionError,
    ExecutorTimeoutError,
    OperationCancelled,
)
from seadeploy.utils.execution import ExecutionContext
from seadeploy.utils.retry import RetryError, retry
from .base import DEFAULT_TIMEOUT, Executor

log = logging.getLogger(__name__)

CONNECT_TIMEOUT = 10.0


class SSHConnectionPool:
    """
    One live ``SSHClient`` per host, guarded by a lock.

    A cached client is proven alive by opening a session on its transport
    before it is handed out; a dead one is closed, evicted and redialed.
    """

    def __init__(
        self,
        user: str,
        *,
        port: int = 22,
        host_ports: Optional[Dict[str, int]] = None,
        identity_file: Optional[str | Path] = None,
        connect_timeout: float = CONNECT_TIMEOUT,
        connect_retries: int = 3,
        retry_delay: float = 2.0,
    ):
        self.user = user
        self.port = port
        self.host_ports = dict(host_ports or {})
        self.identity_file = Path(identity_file).expanduser() if identity_file else None
        self.connect_timeout = connect_timeout
        self.connect_retries = connect_retries
        self.retry_delay = retry_delay
        self._clients: Dict[str, paramiko.SSHClient] = {}
        self._host_locks: Dict[str, threading.Lock] = {}
        self._lock = threading.Lock()
        self._pkey = None

    def port_for(self, host: str) -> int:
        return self.host_ports.get(host, self.port)

    def _host_lock(self, host: str) -> threading.Lock:
        with self._lock:
            return self._host_locks.setdefault(host, threading.Lock())

    def get(self, host: str) -> paramiko.SSHClient:
        with self._host_lock(host):
            with self._lock:
                client = self._clients.get(host)
            if client is not None:
                if self._alive(client):
                    return client
                log.info("(%s) cached SSH connection is dead, redialing", host)
                self.evict(host)
            client = self._dial(host)
            with self._lock:
                self._clients[host] = client
            return client

    def evict(self, host: str) -> None:
        with self._lock:
            client = self._clients.pop(host, None)
        if client is not None:
            try:
                client.close()
            except (OSError, EOFError, paramiko.SSHException):
                log.debug("(%s) error closing stale connection", host, exc_info=True)

    def _alive(self, client: paramiko.SSHClient) -> bool:
        transport = client.get_transport()
        if transport is None or not transport.is_active():
            return False
        try:
            transport.open_session().close()
        except (OSError, EOFError, paramiko.SSHException):
            return False
        return True

    def _load_key(self, host: str):
        if self._pkey is not None:
            return self._pkey
        if self.identity_file is None:
            return None
        for key_cls in (paramiko.RSAKey, paramiko.Ed25519Key, paramiko.ECDSAKey):
            try:
                self._pkey = key_cls.from_private_key_file(str(self.identity_file))
                return self._pkey
            except (paramiko.SSHException, OSError):
                continue
        raise ExecutorConnectionError(
            host, self.port_for(host), self.user,
            f"unable to load SSH identity file {self.identity_file}",
        )

    def _dial(self, host: str) -> paramiko.SSHClient:
        port = self.port_for(host)
        pkey = self._load_key(host)
        if pkey is None and not paramiko.Agent().get_keys():
            raise ExecutorConnectionError(host, port, self.user, "no SSH authentication method available")

        @retry(
            retries=self.connect_retries,
            delay=self.retry_delay,
            retry_on=(OSError, EOFError),
            on_retry=lambda attempt, exc: log.warning(
                "(%s) SSH connect attempt %d failed: %s", host, attempt, exc
            ),
        )
        def _connect() -> paramiko.SSHClient:
            client = paramiko.SSHClient()
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            client.connect(
                hostname=host,
                port=port,
                username=self.user,
                pkey=pkey,
                timeout=self.connect_timeout,
                allow_agent=pkey is None,
                look_for_keys=False,
            )
            return client

        log.debug("(%s) dialing %s@%s:%d", host, self.user, host, port)
        try:
            return _connect()
        except RetryError as e:
            raise ExecutorConnectionError(host, port, self.user, cause=e.cause) from e
        except paramiko.SSHException as e:
            raise ExecutorConnectionError(host, port, self.user, cause=e) from e

    def close(self) -> None:
        with self._lock:
            clients = list(self._clients.items())
            self._clients.clear()
        for host, client in clients:
            try:
                client.close()
            except (OSError, EOFError, paramiko.SSHException):
                log.debug("(%s) error closing connection", host, exc_info=True)


class SSHExecutor(Executor):
    """Pooled paramiko executor. The owner must ``close()`` it."""

    def __init__(
        self,
        user: str,
        *,
        port: int = 22,
        host_ports: Optional[Dict[str, int]] = None,
        identity_file: Optional[str | Path] = None,
        default_timeout: float = DEFAULT_TIMEOUT,
        connect_timeout: float = CONNECT_TIMEOUT,
        poll_interval: float = 0.2,
        pool: Optional[SSHConnectionPool] = None,
    ):
        self.default_timeout = default_timeout
        self.poll_interval = poll_interval
        self.pool = pool or SSHConnectionPool(
            user,
            port=port,
            host_ports=host_ports,
            identity_file=identity_file,
            connect_timeout=connect_timeout,
        )

    def execute_with_timeout(
        self,
        host: str,
        command: str,
        timeout: float,
        *,
        ctx: Optional[ExecutionContext] = None,
    ) -> str:
        if ctx is not None:
            ctx.check()

        client = self.pool.get(host)
        try:
            chan = client.get_transport().open_session()
        except (OSError, EOFError, paramiko.SSHException) as e:
            self.pool.evict(host)
            raise ExecutorConnectionError(host, self.pool.port_for(host), self.pool.user, cause=e) from e

        log.debug("(%s) $ %s", host, command)
        chunks: List[bytes] = []
        deadline = time.monotonic() + timeout
        try:
            chan.set_combine_stderr(True)
            chan.exec_command(command)
            while True:
                if chan.recv_ready():
                    chunks.append(chan.recv(4096))
                    continue
                if chan.exit_status_ready():
                    break
                if ctx is not None and ctx.cancelled:
                    raise OperationCancelled(f"cancelled while running on {host}: {command}")
                if time.monotonic() >= deadline:
                    raise ExecutorTimeoutError(host, command, timeout)
                time.sleep(self.poll_interval)

            while chan.recv_ready():
                chunks.append(chan.recv(4096))
            rc = chan.recv_exit_status()
        except (OSError, EOFError, paramiko.SSHException) as e:
            self.pool.evict(host)
            raise ExecutorConnectionError(host, self.pool.port_for(host), self.pool.user, cause=e) from e
        finally:
            chan.close()

        output = b"".join(chunks).decode("utf-8", "replace")
        log.debug("(%s) [exit %d] %s", host, rc, output.strip())
        if rc != 0:
            raise CommandFailedError(host, command, rc, output)
        return output

    def _stage_text(self, host: str, content: str, path: str) -> None:
        sftp = self.pool.get(host).open_sftp()
        try:
            with sftp.open(path, "w") as f:
                f.write(content)
        finally:
            sftp.close()

    def _stage_file(self, host: str, local_path: Path, path: str) -> None:
        sftp = self.pool.get(host).open_sftp()
        try:
            sftp.put(str(local_path), path)
        finally:
            sftp.close()

    def close(self) -> None:
        self.pool.close()

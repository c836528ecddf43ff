# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/seadeploy/disks.py

from __future__ import annotations

import logging
import math
import re
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Set, Tuple

from seadeploy.config.models import FolderSpec
from seadeploy.errors import CommandFailedError, ProvisioningError
from seadeploy.executor.base import Executor, shq
from seadeploy.observers.dispatcher import EventBus
from seadeploy.observers.events import DiskProvisioned
from seadeploy.utils.execution import ExecutionContext

log = logging.getLogger(__name__)

DEFAULT_PREFIXES = ("/dev/sd", "/dev/nvme")
FILESYSTEM = "ext4"
MAX_DATA_DIRS = 99

MIB = 1024 * 1024
LARGE_DISK_MB = 200 * 1024
LARGE_DISK_RESERVE_MB = 10 * 1024
SMALL_DISK_USABLE_RATIO = 0.95

LSBLK_COLUMNS = ("KNAME", "PATH", "SIZE", "LABEL", "UUID", "FSTYPE", "TYPE", "MOUNTPOINT", "MAJ:MIN")
LSBLK_CMD = "lsblk -b -P -o " + ",".join(LSBLK_COLUMNS)

_PAIR = re.compile(r'([A-Z:]+)="(.*?)"')
_DATA_DIR = re.compile(r"/data\d+")


@dataclass
class BlockDevice:
    device_name: str = ""
    path: str = ""
    size: int = 0
    label: str = ""
    uuid: str = ""
    filesystem_type: str = ""
    type: str = ""
    mount_point: str = ""
    major_minor: str = ""


def parse_lsblk(output: str, prefixes: Sequence[str]) -> Tuple[List[BlockDevice], Set[str]]:
    """
    Parse ``lsblk -P`` output.

    Returns devices whose path starts with one of ``prefixes`` (floppy
    disks dropped) and every mount point reported, matching or not.
    """
    devices: List[BlockDevice] = []
    mountpoints: Set[str] = set()
    for line in output.splitlines():
        pairs = dict(_PAIR.findall(line))
        if not pairs:
            continue
        mount = pairs.get("MOUNTPOINT", "")
        if mount:
            mountpoints.add(mount)
        dev = BlockDevice(
            device_name=pairs.get("KNAME", ""),
            path=pairs.get("PATH", ""),
            size=int(pairs.get("SIZE") or 0),
            label=pairs.get("LABEL", ""),
            uuid=pairs.get("UUID", ""),
            filesystem_type=pairs.get("FSTYPE", ""),
            type=pairs.get("TYPE", ""),
            mount_point=mount,
            major_minor=pairs.get("MAJ:MIN", ""),
        )
        if not any(dev.path.startswith(p) for p in prefixes):
            continue
        # major 2 is the floppy driver
        if dev.type == "disk" and dev.major_minor.startswith("2:"):
            continue
        devices.append(dev)
    return devices, mountpoints


def list_block_devices(
    executor: Executor,
    host: str,
    prefixes: Sequence[str] = DEFAULT_PREFIXES,
    *,
    ctx: Optional[ExecutionContext] = None,
) -> Tuple[List[BlockDevice], Set[str]]:
    return parse_lsblk(executor.execute(host, LSBLK_CMD, ctx=ctx), prefixes)


def get_disk_uuid(executor: Executor, host: str, path: str, *, ctx: Optional[ExecutionContext] = None) -> str:
    devices, _ = list_block_devices(executor, host, [path], ctx=ctx)
    for dev in devices:
        if dev.path == path:
            return dev.uuid
    raise ProvisioningError(f"{host}: block device {path} not found")


def _whole_disks(devices: Sequence[BlockDevice], prefixes: Sequence[str]) -> List[BlockDevice]:
    """Disks without partitions and without a mount point."""
    partitions = [d for d in devices if d.type == "part" and any(d.path.startswith(p) for p in prefixes)]
    out = []
    for dev in devices:
        if dev.type != "disk" or dev.mount_point:
            continue
        if any(re.fullmatch(re.escape(dev.path) + r"p?\d+", p.path) for p in partitions):
            continue
        out.append(dev)
    return out


def unclaimed_disks(devices: Sequence[BlockDevice], prefixes: Sequence[str]) -> List[BlockDevice]:
    """Whole disks with no partitions, no filesystem and no mount point."""
    return [d for d in _whole_disks(devices, prefixes) if not d.filesystem_type]


def unmounted_disks(devices: Sequence[BlockDevice], prefixes: Sequence[str]) -> List[BlockDevice]:
    """Whole disks already carrying our filesystem but not mounted anywhere."""
    return [d for d in _whole_disks(devices, prefixes) if d.filesystem_type == FILESYSTEM]


def max_volume_count(size_bytes: int, volume_size_limit_mb: int) -> int:
    if volume_size_limit_mb <= 0:
        raise ValueError("volume_size_limit_mb must be positive")
    usable_mb = size_bytes // MIB
    if usable_mb > LARGE_DISK_MB:
        usable_mb -= LARGE_DISK_RESERVE_MB
    else:
        usable_mb = math.floor(usable_mb * SMALL_DISK_USABLE_RATIO)
    return max(0, usable_mb // volume_size_limit_mb)


def parse_fstab(text: str) -> Dict[str, str]:
    """Map of fstab source (``UUID=...``, ``/dev/...``) to mount path."""
    entries = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        parts = line.split()
        if len(parts) >= 2:
            entries[parts[0]] = parts[1]
    return entries


class DynamicFolders:
    """
    Provisioned folders per host, shared by every volume server on that host.
    Seeded from the dynamic folders file; callers persist when ``changed``.
    """

    def __init__(self, initial: Optional[Mapping[str, Sequence[FolderSpec]]] = None):
        self._lock = threading.Lock()
        self._folders: Dict[str, List[FolderSpec]] = {h: list(f) for h, f in (initial or {}).items()}
        self.changed = False

    def add(self, host: str, folders: Sequence[FolderSpec]) -> None:
        with self._lock:
            current = self._folders.setdefault(host, [])
            known = {f.folder for f in current}
            for folder in folders:
                if folder.folder in known:
                    continue
                current.append(folder)
                known.add(folder.folder)
                self.changed = True

    def get(self, host: str) -> List[FolderSpec]:
        with self._lock:
            return list(self._folders.get(host, []))

    def snapshot(self) -> Dict[str, List[FolderSpec]]:
        with self._lock:
            return {h: list(f) for h, f in self._folders.items()}


@dataclass
class ProvisionResult:
    host: str
    new_folders: List[FolderSpec] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.new_folders)


class DiskProvisioner:
    """
    Turns raw, unclaimed block devices on one volume host into mounted
    ``/dataN`` folders.

    Every per-disk step checks the host first (filesystem present, fstab entry
    present, already mounted). Besides raw disks, a pass also picks up ext4
    disks left unmounted by an interrupted pass: ones this provisioner
    formatted itself, and ones whose fstab entry points at a ``/dataN`` path.
    A fully provisioned host yields no candidates and no changes.
    """

    def __init__(
        self,
        executor: Executor,
        host: str,
        *,
        volume_size_limit_mb: int,
        prefixes: Sequence[str] = DEFAULT_PREFIXES,
        disk_type: str = "hdd",
        settle_seconds: float = 2.0,
        registry: Optional[DynamicFolders] = None,
        bus: Optional[EventBus] = None,
        run_ctx: Optional[dict] = None,
    ):
        self.executor = executor
        self.host = host
        self.volume_size_limit_mb = volume_size_limit_mb
        self.prefixes = tuple(prefixes)
        self.disk_type = disk_type
        self.settle_seconds = settle_seconds
        self.registry = registry
        self.bus = bus
        self.run_ctx = run_ctx
        # device paths formatted by this provisioner, across retried passes
        self._formatted: Set[str] = set()

    def _run(self, cmd: str, ctx: Optional[ExecutionContext]) -> str:
        return self.executor.execute(self.host, cmd, ctx=ctx)

    def _resumable(self, dev: BlockDevice, fstab: Dict[str, str]) -> bool:
        if dev.path in self._formatted:
            return True
        return bool(dev.uuid) and _DATA_DIR.fullmatch(fstab.get(f"UUID={dev.uuid}", "")) is not None

    def provision(self, ctx: Optional[ExecutionContext] = None) -> ProvisionResult:
        ctx = ctx or ExecutionContext()
        devices, mountpoints = list_block_devices(self.executor, self.host, self.prefixes, ctx=ctx)
        candidates = unclaimed_disks(devices, self.prefixes)
        unmounted = unmounted_disks(devices, self.prefixes)
        result = ProvisionResult(host=self.host)
        if not candidates and not unmounted:
            log.info("(%s) no unclaimed disks", self.host)
            return result

        fstab = parse_fstab(self._run("cat /etc/fstab", ctx))
        resumed = [d for d in unmounted if self._resumable(d, fstab)]
        if resumed:
            log.info("(%s) resuming unmounted disks: %s", self.host, ", ".join(d.path for d in resumed))
        candidates = resumed + candidates
        if not candidates:
            log.info("(%s) no unclaimed disks", self.host)
            return result

        log.info("(%s) disks to provision: %s", self.host, ", ".join(d.path for d in candidates))
        taken = set(mountpoints) | set(fstab.values())

        for dev in candidates:
            ctx.check()
            try:
                folder = self._provision_disk(dev, fstab, taken, ctx)
            except CommandFailedError as e:
                raise ProvisioningError(f"{self.host}: provisioning {dev.path} failed", cause=e) from e
            result.new_folders.append(folder)
            # registered per disk so a later failure in the pass keeps it
            if self.registry is not None:
                self.registry.add(self.host, [folder])
            if self.bus is not None and self.run_ctx is not None:
                self.bus.emit(DiskProvisioned(
                    host=self.host, device=dev.path, folder=folder.folder,
                    uuid=folder.uuid, max_volumes=folder.max, **self.run_ctx,
                ))

        return result

    def _provision_disk(
        self,
        dev: BlockDevice,
        fstab: Dict[str, str],
        taken: Set[str],
        ctx: ExecutionContext,
    ) -> FolderSpec:
        self._ensure_filesystem(dev, ctx)
        uuid = self._read_uuid(dev, ctx)

        source = f"UUID={uuid}"
        mount = fstab.get(source)
        if mount is None:
            mount = self._allocate_mount_path(taken)
            self._ensure_fstab_entry(source, mount, ctx)
            fstab[source] = mount
        taken.add(mount)
        self._ensure_mounted(mount, ctx)

        folder = FolderSpec(
            folder=mount,
            disk_type=self.disk_type,
            block_device=dev.path,
            uuid=uuid,
            max=max_volume_count(dev.size, self.volume_size_limit_mb),
        )
        log.info("(%s) provisioned %s at %s uuid=%s max=%d", self.host, dev.path, mount, uuid, folder.max)
        return folder

    def _ensure_filesystem(self, dev: BlockDevice, ctx: ExecutionContext) -> None:
        existing = self._run(f"sudo blkid -o value -s TYPE {shq(dev.path)} || true", ctx).strip()
        if existing == FILESYSTEM:
            log.debug("(%s) %s already has %s", self.host, dev.path, FILESYSTEM)
            return
        if existing:
            raise ProvisioningError(f"{self.host}: {dev.path} carries a foreign filesystem {existing!r}")
        self._run(f"sudo mkfs.{FILESYSTEM} -F -q {shq(dev.path)}", ctx)
        self._formatted.add(dev.path)
        ctx.sleep(self.settle_seconds)

    def _read_uuid(self, dev: BlockDevice, ctx: ExecutionContext) -> str:
        uuid = get_disk_uuid(self.executor, self.host, dev.path, ctx=ctx)
        if not uuid:
            raise ProvisioningError(f"{self.host}: no filesystem UUID for {dev.path}")
        return uuid

    def _allocate_mount_path(self, taken: Set[str]) -> str:
        for n in range(1, MAX_DATA_DIRS + 1):
            path = f"/data{n}"
            if path not in taken:
                return path
        raise ProvisioningError(f"{self.host}: no free /dataN mount path left")

    def _ensure_fstab_entry(self, source: str, mount: str, ctx: ExecutionContext) -> None:
        line = f"{source} {mount} {FILESYSTEM} noatime 0 2"
        self._run(
            f"grep -q {shq('^' + source + ' ')} /etc/fstab || echo {shq(line)} | sudo tee -a /etc/fstab > /dev/null",
            ctx,
        )

    def _ensure_mounted(self, mount: str, ctx: ExecutionContext) -> None:
        self._run(f"sudo mkdir -p -m 755 {shq(mount)}", ctx)
        self._run(f"mountpoint -q {shq(mount)} || sudo mount {shq(mount)}", ctx)

# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/seadeploy/config/models.py

from __future__ import annotations

from typing import ClassVar, Dict, Iterator, List, Optional, Tuple

from pydantic import BaseModel, Field, model_validator


class GlobalOptions(BaseModel):
    """Defaults shared by every instance in the topology."""

    config_dir: str = "/etc/seaweed"
    data_dir: str = "/opt/seaweed"
    bin_dir: str = "/usr/local/bin"
    log_dir: str = "/var/log/seaweedfs"
    service_user: str = "seaweed"
    volume_size_limit_mb: int = 5000
    replication: str = "000"


class FolderSpec(BaseModel):
    folder: str                      # mount path, e.g. /data1
    disk_type: str = "hdd"
    block_device: str = ""           # empty for folders declared in the topology
    uuid: str = ""
    max: int = 0                     # max volumes, 0 lets the server decide


def _opt(out: Dict[str, str], key: str, value, default=None) -> None:
    """Only non-empty, non-default values reach the options file."""
    if value is None or value == "" or value == default:
        return
    if isinstance(value, bool):
        value = "true" if value else "false"
    out[key] = str(value)


class ComponentSpec(BaseModel):
    """One server instance. Identity is (role, host, port)."""

    role: ClassVar[str] = ""
    binary: ClassVar[str] = "weed"

    host: str
    port: int
    ssh_port: int = 22
    data_dir: str = ""
    ip_bind: str = ""

    @property
    def identity(self) -> Tuple[str, str, int]:
        return (self.role, self.host, self.port)

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def instance_name(self) -> str:
        return f"{self.role}-{self.host}-{self.port}"

    @property
    def service_name(self) -> str:
        return f"seaweed-{self.role}-{self.port}"

    @property
    def unit_path(self) -> str:
        return f"/etc/systemd/system/{self.service_name}.service"

    @property
    def grpc_port(self) -> int:
        return self.port + 10000

    def config_path(self, g: GlobalOptions) -> str:
        return f"{g.config_dir}/{self.role}-{self.port}.options"

    def exec_start(self, g: GlobalOptions) -> str:
        return f"{g.bin_dir}/{self.binary} {self.role} -options={self.config_path(g)}"

    def options(self, g: GlobalOptions, peers: List[str]) -> Dict[str, str]:
        raise NotImplementedError


class MasterServerSpec(ComponentSpec):
    role: ClassVar[str] = "master"

    port: int = 9333
    volume_size_limit_mb: Optional[int] = None
    default_replication: Optional[str] = None

    def options(self, g: GlobalOptions, peers: List[str]) -> Dict[str, str]:
        out: Dict[str, str] = {}
        _opt(out, "mdir", self.data_dir)
        _opt(out, "peers", ",".join(peers))
        _opt(out, "ip", self.host)
        _opt(out, "ip.bind", self.ip_bind)
        _opt(out, "port", self.port, 9333)
        _opt(out, "volumeSizeLimitMB", self.volume_size_limit_mb or g.volume_size_limit_mb, 30000)
        _opt(out, "defaultReplication", self.default_replication or g.replication)
        return out


class VolumeServerSpec(ComponentSpec):
    role: ClassVar[str] = "volume"

    port: int = 8080
    folders: List[FolderSpec] = Field(default_factory=list)
    data_center: str = ""
    rack: str = ""

    def options(self, g: GlobalOptions, peers: List[str]) -> Dict[str, str]:
        out: Dict[str, str] = {}
        _opt(out, "ip", self.host)
        _opt(out, "ip.bind", self.ip_bind)
        _opt(out, "port", self.port, 8080)
        _opt(out, "mserver", ",".join(peers))
        if self.folders:
            _opt(out, "dir", ",".join(f.folder for f in self.folders))
            _opt(out, "max", ",".join(str(f.max) for f in self.folders))
            _opt(out, "disk", ",".join(f.disk_type or "hdd" for f in self.folders))
        else:
            _opt(out, "dir", self.data_dir)
        _opt(out, "dataCenter", self.data_center)
        _opt(out, "rack", self.rack)
        return out


class FilerServerSpec(ComponentSpec):
    role: ClassVar[str] = "filer"

    port: int = 8888
    s3: bool = False
    s3_port: int = 8333
    webdav: bool = False
    webdav_port: int = 7333

    def options(self, g: GlobalOptions, peers: List[str]) -> Dict[str, str]:
        out: Dict[str, str] = {}
        _opt(out, "ip", self.host)
        _opt(out, "ip.bind", self.ip_bind)
        _opt(out, "port", self.port, 8888)
        _opt(out, "master", ",".join(peers))
        _opt(out, "defaultStoreDir", self.data_dir)
        _opt(out, "s3", self.s3, False)
        _opt(out, "s3.port", self.s3_port, 8333)
        _opt(out, "webdav", self.webdav, False)
        _opt(out, "webdav.port", self.webdav_port, 7333)
        return out


class EnvoyServerSpec(ComponentSpec):
    """Edge proxy in front of the filers. Not a weed role."""

    role: ClassVar[str] = "envoy"
    binary: ClassVar[str] = "envoy"

    port: int = 8000
    admin_port: int = 9901
    version: str = ""

    def config_path(self, g: GlobalOptions) -> str:
        return f"{g.config_dir}/envoy-{self.port}.yaml"

    def exec_start(self, g: GlobalOptions) -> str:
        return f"{g.bin_dir}/envoy -c {self.config_path(g)}"

    def options(self, g: GlobalOptions, peers: List[str]) -> Dict[str, str]:
        out: Dict[str, str] = {}
        _opt(out, "ip", self.host)
        _opt(out, "port", self.port)
        _opt(out, "filers", ",".join(peers))
        return out


class Specification(BaseModel):
    name: str = "seaweedfs"
    global_options: GlobalOptions = Field(default_factory=GlobalOptions)
    master_servers: List[MasterServerSpec] = Field(default_factory=list)
    volume_servers: List[VolumeServerSpec] = Field(default_factory=list)
    filer_servers: List[FilerServerSpec] = Field(default_factory=list)
    envoy_servers: List[EnvoyServerSpec] = Field(default_factory=list)

    @model_validator(mode="after")
    def _validate_topology(self) -> "Specification":
        if not self.master_servers:
            raise ValueError("at least one master server is required")
        seen = set()
        for comp in self.components(include_envoy=True):
            key = (comp.host, comp.port)
            if key in seen:
                raise ValueError(f"duplicate listen address {comp.host}:{comp.port}")
            seen.add(key)
            if not comp.data_dir:
                comp.data_dir = f"{self.global_options.data_dir}/{comp.role}-{comp.port}"
        return self

    def components(self, *, include_envoy: bool = False) -> Iterator[ComponentSpec]:
        yield from self.master_servers
        yield from self.volume_servers
        yield from self.filer_servers
        if include_envoy:
            yield from self.envoy_servers

    def master_addresses(self) -> List[str]:
        return [m.address for m in self.master_servers]

    def filer_addresses(self) -> List[str]:
        return [f.address for f in self.filer_servers]

    def peers_for(self, comp: ComponentSpec) -> List[str]:
        """Addresses a component is configured with: filers for envoy, masters otherwise."""
        if isinstance(comp, EnvoyServerSpec):
            return self.filer_addresses()
        return self.master_addresses()

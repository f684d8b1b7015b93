from __future__ import annotations

import socket
from typing import Protocol

import docker
from docker.errors import DockerException

from .settings import Settings


class DiscoveryError(Exception):
    pass


class Discovery(Protocol):
    def list_targets(self) -> set[str]: ...


def node_http_base(host: str, port: int, scheme: str = "http") -> str:
    """Base URL for a Vault node; IPv6 literals are bracketed."""
    if ":" in host and not host.startswith("["):
        host = f"[{host}]"
    return f"{scheme}://{host}:{int(port)}"


class DockerDiscovery:
    """Vault nodes are running containers carrying a label, reached by container name.

    The unsealer is expected to share a docker network with the nodes.
    """

    def __init__(self, label: str, port: int = 8200, client: docker.DockerClient | None = None):
        self.label = label
        self.port = port
        self._client = client

    def _docker(self) -> docker.DockerClient:
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    def list_targets(self) -> set[str]:
        try:
            containers = self._docker().containers.list(filters={"label": [self.label], "status": "running"})
        except DockerException as e:
            raise DiscoveryError(f"listing containers with label {self.label!r}: {e}") from e
        if not containers:
            raise DiscoveryError(f"no running containers with label {self.label!r}")
        return {node_http_base(c.name, self.port) for c in containers}


class DnsDiscovery:
    """Every address record behind a name is a node (e.g. a headless service)."""

    def __init__(self, name: str, port: int = 8200, scheme: str = "http"):
        self.name = name
        self.port = port
        self.scheme = scheme

    def list_targets(self) -> set[str]:
        try:
            infos = socket.getaddrinfo(self.name, self.port, proto=socket.IPPROTO_TCP)
        except OSError as e:
            raise DiscoveryError(f"resolving {self.name!r}: {e}") from e
        hosts = {info[4][0] for info in infos}
        if not hosts:
            raise DiscoveryError(f"no addresses found for {self.name!r}")
        return {node_http_base(h, self.port, self.scheme) for h in hosts}


def build_discovery(st: Settings) -> Discovery | None:
    if st.discovery == "docker":
        return DockerDiscovery(st.docker_label, st.docker_port)
    if st.discovery == "dns":
        return DnsDiscovery(st.dns_name, st.dns_port, st.dns_scheme)
    return None

"""BGP advertisements and the session interfaces that speakers implement."""

from __future__ import annotations

import ipaddress
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Union

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
IPPrefix = Union[
    ipaddress.IPv4Network,
    ipaddress.IPv6Network,
    ipaddress.IPv4Interface,
    ipaddress.IPv6Interface,
]


def _normalize(ip: IPAddress | None) -> IPAddress | None:
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


@dataclass
class Advertisement:
    """One network path and its BGP attributes."""

    prefix: IPPrefix
    next_hop: IPAddress | None = None
    local_pref: int = 0
    communities: list[int] = field(default_factory=list)

    def __post_init__(self) -> None:
        if isinstance(self.prefix, str):
            self.prefix = ipaddress.ip_network(self.prefix, strict=False)
        if isinstance(self.next_hop, str):
            self.next_hop = ipaddress.ip_address(self.next_hop)
        self.communities = list(self.communities)

    def equal(self, other: Advertisement) -> bool:
        """Return True if both advertisements describe the same path."""
        if str(self.prefix) != str(other.prefix):
            return False
        if _normalize(self.next_hop) != _normalize(other.next_hop):
            return False
        if self.local_pref != other.local_pref:
            return False
        return self.communities == other.communities


class Session(ABC):
    """A BGP session to one peer."""

    @abstractmethod
    def set(self, *args: Advertisement) -> None:
        """Replace the set of advertisements sent to the peer."""

    @abstractmethod
    def close(self) -> None:
        """Shut the session down."""

    def __enter__(self) -> Session:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


class SessionManager(ABC):
    """Creates sessions and holds configuration shared between them."""

    @abstractmethod
    def new_session(
        self,
        logger: Any,
        addr: str,
        src_addr: IPAddress | None,
        my_asn: int,
        router_id: IPAddress | None,
        asn: int,
        hold_time: float,
        keepalive_time: float,
        password: str,
        my_node: str,
        bfd_profile: str,
    ) -> Session:
        """Open a session to the peer at addr ("host:port")."""

    @abstractmethod
    def sync_bfd_profiles(self, profiles: dict[str, Any]) -> None:
        """Install the given BFD profiles, replacing existing ones."""
"""IP address pools and the allocation of service addresses from them."""

from __future__ import annotations

import enum
import ipaddress
from dataclasses import dataclass, field
from typing import Iterable, Sequence, Union

from bmlb.metrics import AllocatorStats, allocator_stats

MAX_INT64 = 2**63 - 1

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


class AllocationError(ValueError):
    """Raised when an address cannot be assigned or allocated."""


def _to_ip(value: IPAddress | str) -> IPAddress:
    ip = ipaddress.ip_address(value) if isinstance(value, str) else value
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


def _to_network(value: IPNetwork | str) -> IPNetwork:
    if isinstance(value, str):
        return ipaddress.ip_network(value, strict=False)
    return value


class Family(str, enum.Enum):
    """The IP family of a service or an address set."""

    IPV4 = "ipv4"
    IPV6 = "ipv6"
    DUAL_STACK = "dual"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def for_address(cls, ip: IPAddress | str) -> Family:
        return cls.IPV4 if _to_ip(ip).version == 4 else cls.IPV6

    @classmethod
    def for_cidr(cls, cidr: IPNetwork | str) -> Family:
        return cls.IPV4 if _to_network(cidr).version == 4 else cls.IPV6

    @classmethod
    def for_addresses(cls, ips: Sequence[IPAddress | str]) -> Family:
        """Return the family of one address, or DUAL_STACK for one of each family."""
        if len(ips) == 1:
            return cls.for_address(ips[0])
        if len(ips) == 2:
            first, second = cls.for_address(ips[0]), cls.for_address(ips[1])
            if first != second:
                return cls.DUAL_STACK
            raise AllocationError(f"same address family {ips[0]} {ips[1]}")
        raise AllocationError(f"invalid number of addresses: {len(ips)}")


@dataclass
class Pool:
    """A named set of CIDRs that addresses may be allocated from."""

    cidrs: list[IPNetwork] = field(default_factory=list)
    avoid_buggy_ips: bool = False
    auto_assign: bool = True
    protocol: str = ""

    def __post_init__(self) -> None:
        self.cidrs = [_to_network(c) for c in self.cidrs]


@dataclass(frozen=True)
class Port:
    """One port in use by a service."""

    proto: str
    port: int

    def __str__(self) -> str:
        return f"{self.proto}/{self.port}"


@dataclass(frozen=True)
class _Key:
    sharing: str
    backend: str


@dataclass
class _Alloc:
    pool: str
    ips: tuple[IPAddress, ...]
    ports: tuple[Port, ...]
    key: _Key


def ip_confuses_buggy_firmwares(ip: IPAddress | str) -> bool:
    """Return True for IPv4 addresses ending in .0 or .255.

    Such addresses can confuse smurf protection on poor CPE firmwares.
    """
    ip = _to_ip(ip)
    if ip.version != 4:
        return False
    last = ip.packed[3]
    return last in (0, 255)


def pool_count(pool: Pool) -> int:
    """Return the number of usable addresses in pool."""
    total = 0
    for cidr in pool.cidrs:
        ones, bits = cidr.prefixlen, cidr.max_prefixlen
        if bits - ones >= 62:
            # An enormous range that will never run out.
            return MAX_INT64
        size = 2 ** (bits - ones)
        if pool.avoid_buggy_ips:
            if ones <= 24:
                # A pair of buggy addresses for each /24 in the range.
                size -= 2 ** (24 - ones) * 2
            else:
                if ip_confuses_buggy_firmwares(cidr.network_address):
                    size -= 1
                if ip_confuses_buggy_firmwares(cidr.broadcast_address):
                    size -= 1
        total += size
    return total


def pool_for(pools: dict[str, Pool], ips: Iterable[IPAddress | str]) -> str | None:
    """Return the name of the pool owning all of ips, or None."""
    addrs = [_to_ip(ip) for ip in ips]
    for name, pool in pools.items():
        count = 0
        for ip in addrs:
            if pool.avoid_buggy_ips and ip_confuses_buggy_firmwares(ip):
                continue
            if any(ip.version == cidr.version and ip in cidr for cidr in pool.cidrs):
                count += 1
        if count == len(addrs):
            return name
    return None


def _sharing_ok(existing: _Key, new: _Key) -> str | None:
    if existing.sharing == "":
        return "existing service does not allow sharing"
    if new.sharing == "":
        return "new service does not allow sharing"
    if existing.sharing != new.sharing:
        return f"sharing key {new.sharing!r} does not match existing sharing key {existing.sharing!r}"
    if existing.backend != new.backend:
        return f"backend key {new.backend!r} does not match existing sharing key {existing.backend!r}"
    return None


def _fmt_ips(ips: Iterable[IPAddress]) -> str:
    return "[" + " ".join(repr(str(ip)) for ip in ips) + "]"


class Allocator:
    """Tracks address pools and allocates addresses from them to services."""

    def __init__(self, stats: AllocatorStats | None = None) -> None:
        self._stats = stats if stats is not None else allocator_stats
        self._pools: dict[str, Pool] = {}
        self._allocated: dict[str, _Alloc] = {}
        self._sharing_key_for_ip: dict[str, _Key] = {}
        self._ports_in_use: dict[str, dict[Port, str]] = {}
        self._services_on_ip: dict[str, set[str]] = {}
        self._pool_ips_in_use: dict[str, dict[str, int]] = {}

    def set_pools(self, pools: dict[str, Pool]) -> None:
        """Replace the pools, provided every existing allocation still fits."""
        for svc, alloc in self._allocated.items():
            if pool_for(pools, alloc.ips) is None:
                raise AllocationError(
                    f"new config not compatible with assigned IPs: service {svc!r} "
                    f"cannot own {_fmt_ips(alloc.ips)} under new config"
                )

        for name in list(self._pools):
            if name not in pools:
                self._stats.delete_pool(name)

        self._pools = dict(pools)

        for svc, alloc in list(self._allocated.items()):
            pool = pool_for(self._pools, alloc.ips)
            if pool != alloc.pool:
                self.unassign(svc)
                alloc.pool = pool
                self._assign(svc, alloc)

        for name, pool in self._pools.items():
            self._stats.pool_capacity.set(name, pool_count(pool))
            self._stats.pool_active.set(name, len(self._pool_ips_in_use.get(name, {})))

    def _assign(self, svc: str, alloc: _Alloc) -> None:
        self.unassign(svc)
        self._allocated[svc] = alloc
        for ip in alloc.ips:
            ip_key = str(ip)
            self._sharing_key_for_ip[ip_key] = alloc.key
            in_use = self._ports_in_use.setdefault(ip_key, {})
            for port in alloc.ports:
                in_use[port] = svc
            self._services_on_ip.setdefault(ip_key, set()).add(svc)
            counts = self._pool_ips_in_use.setdefault(alloc.pool, {})
            counts[ip_key] = counts.get(ip_key, 0) + 1
        pool = self._pools.get(alloc.pool)
        if pool is not None:
            self._stats.pool_capacity.set(alloc.pool, pool_count(pool))
        self._stats.pool_active.set(alloc.pool, len(self._pool_ips_in_use.get(alloc.pool, {})))

    def assign(
        self,
        svc: str,
        ips: Sequence[IPAddress | str],
        ports: Iterable[Port] | None = None,
        sharing_key: str = "",
        backend_key: str = "",
    ) -> None:
        """Assign ips to svc if sharing and backend keys permit it."""
        addrs = tuple(_to_ip(ip) for ip in ips)
        port_list = tuple(ports or ())
        pool = pool_for(self._pools, addrs)
        if pool is None:
            raise AllocationError(f"{_fmt_ips(addrs)} is not allowed in config")
        key = _Key(sharing_key, backend_key)
        if len(addrs) > 2:
            raise AllocationError(f"More than two addresses {_fmt_ips(addrs)}")
        if len(addrs) == 2 and Family.for_address(addrs[0]) == Family.for_address(addrs[1]):
            raise AllocationError(f"{str(addrs[0])!r} {str(addrs[1])!r} has the same family")

        for ip in addrs:
            self._check_sharing(svc, str(ip), port_list, key)

        self._assign(svc, _Alloc(pool=pool, ips=addrs, ports=port_list, key=key))

    def unassign(self, svc: str) -> bool:
        """Free the addresses of svc; return whether it had any."""
        alloc = self._allocated.pop(svc, None)
        if alloc is None:
            return False
        for ip in alloc.ips:
            ip_key = str(ip)
            in_use = self._ports_in_use.get(ip_key, {})
            for port in alloc.ports:
                current = in_use.get(port, "")
                if current != svc:
                    raise RuntimeError(
                        f"incoherent state, I thought port {str(port)!r} belonged to service "
                        f"{svc!r}, but it seems to belong to {current!r}"
                    )
                del in_use[port]
            self._services_on_ip.get(ip_key, set()).discard(svc)
            if not in_use:
                self._ports_in_use.pop(ip_key, None)
                self._sharing_key_for_ip.pop(ip_key, None)
            counts = self._pool_ips_in_use.setdefault(alloc.pool, {})
            counts[ip_key] = counts.get(ip_key, 0) - 1
            if counts[ip_key] == 0:
                del counts[ip_key]
        self._stats.pool_active.set(alloc.pool, len(self._pool_ips_in_use.get(alloc.pool, {})))
        return True

    def allocate_from_pool(
        self,
        svc: str,
        family: Family,
        pool_name: str,
        ports: Iterable[Port] | None = None,
        sharing_key: str = "",
        backend_key: str = "",
    ) -> list[IPAddress]:
        """Assign free addresses of the given family from the named pool to svc."""
        port_list = list(ports or ())
        existing = self._allocated.get(svc)
        if existing is not None:
            alloc_family = Family.for_addresses(existing.ips)
            if alloc_family != family:
                raise AllocationError(
                    f"IP for wrong family assigned alloc {alloc_family} service family {family}"
                )
            self.assign(svc, existing.ips, port_list, sharing_key, backend_key)
            return list(existing.ips)

        pool = self._pools.get(pool_name)
        if pool is None:
            raise AllocationError(f"unknown pool {pool_name!r}")

        if family == Family.DUAL_STACK:
            wanted = {Family.IPV4, Family.IPV6}
        else:
            wanted = {family}

        ips: list[IPAddress] = []
        for cidr in pool.cidrs:
            cidr_family = Family.for_cidr(cidr)
            if cidr_family not in wanted:
                continue
            ip = self._ip_from_cidr(cidr, pool.avoid_buggy_ips, svc, port_list, sharing_key, backend_key)
            if ip is not None:
                ips.append(ip)
                wanted.discard(cidr_family)

        if wanted:
            raise AllocationError(f"no available IPs in pool {pool_name!r} for {family} IPFamily")
        self.assign(svc, ips, port_list, sharing_key, backend_key)
        return ips

    def allocate(
        self,
        svc: str,
        family: Family,
        ports: Iterable[Port] | None = None,
        sharing_key: str = "",
        backend_key: str = "",
    ) -> list[IPAddress]:
        """Assign any available addresses from an auto-assign pool to svc."""
        port_list = list(ports or ())
        existing = self._allocated.get(svc)
        if existing is not None:
            self.assign(svc, existing.ips, port_list, sharing_key, backend_key)
            return list(existing.ips)

        for name, pool in self._pools.items():
            if not pool.auto_assign:
                continue
            try:
                return self.allocate_from_pool(svc, family, name, port_list, sharing_key, backend_key)
            except AllocationError:
                continue
        raise AllocationError("no available IPs")

    def pool(self, svc: str) -> str | None:
        """Return the pool holding the addresses of svc, or None."""
        alloc = self._allocated.get(svc)
        if alloc is None:
            return None
        return pool_for(self._pools, alloc.ips)

    def ips_of(self, svc: str) -> list[IPAddress]:
        """Return the addresses currently assigned to svc."""
        alloc = self._allocated.get(svc)
        return list(alloc.ips) if alloc is not None else []

    def _ip_from_cidr(
        self,
        cidr: IPNetwork,
        avoid_buggy_ips: bool,
        svc: str,
        ports: Sequence[Port],
        sharing_key: str,
        backend_key: str,
    ) -> IPAddress | None:
        key = _Key(sharing_key, backend_key)
        for ip in cidr:
            if avoid_buggy_ips and ip_confuses_buggy_firmwares(ip):
                continue
            try:
                self._check_sharing(svc, str(ip), ports, key)
            except AllocationError:
                continue
            return ip
        return None

    def _check_sharing(self, svc: str, ip: str, ports: Sequence[Port], key: _Key) -> None:
        existing = self._sharing_key_for_ip.get(ip)
        if existing is None:
            return
        if _sharing_ok(existing, key) is not None:
            # The owner may change its own key in place if nobody else uses the IP.
            others = sorted(s for s in self._services_on_ip.get(ip, ()) if s != svc)
            if others:
                raise AllocationError(
                    f"can't change sharing key for {svc!r}, address also in use by {','.join(others)}"
                )
        in_use = self._ports_in_use.get(ip, {})
        for port in ports:
            current = in_use.get(port)
            if current is not None and current != svc:
                raise AllocationError(f"port {port} is already in use on {ip!r}")
"""Socket and interface helpers for native BGP sessions."""

from __future__ import annotations

import ipaddress
import socket
import struct
import zlib
from typing import Mapping, Sequence, Union

import psutil

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
Interfaces = Mapping[str, Sequence[IPAddress]]

TCP_MD5SIG = 14
TCP_MD5SIG_MAXKEYLEN = 80
_MD5SIG = struct.Struct("=H126sHHI80s")

DEFAULT_DIAL_TIMEOUT = 10.0


def _to_ip(value: IPAddress | str) -> IPAddress:
    ip = ipaddress.ip_address(value) if isinstance(value, str) else value
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


def hash_router_id(hostname: str) -> ipaddress.IPv4Address:
    """Derive a router ID from the CRC-32 of hostname."""
    checksum = zlib.crc32(hostname.encode("utf-8")) & 0xFFFFFFFF
    return ipaddress.IPv4Address(struct.pack("<I", checksum))


def local_interfaces() -> dict[str, list[IPAddress]]:
    """Return the IP addresses of each local network interface."""
    result: dict[str, list[IPAddress]] = {}
    for name, entries in psutil.net_if_addrs().items():
        addrs: list[IPAddress] = []
        for entry in entries:
            if entry.family not in (socket.AF_INET, socket.AF_INET6):
                continue
            try:
                addrs.append(ipaddress.ip_address(entry.address.split("%", 1)[0]))
            except ValueError:
                continue
        result[name] = addrs
    return result


def get_router_id(
    addr: IPAddress | str, my_node: str, interfaces: Interfaces | None = None
) -> ipaddress.IPv4Address | IPAddress:
    """Pick a router ID for a session whose local address is addr.

    An IPv4 address is used as is. For IPv6, the first IPv4 address on the
    interface holding addr is used; failing that, one hashed from my_node.
    """
    ip = _to_ip(addr)
    if ip.version == 4:
        return ip
    if interfaces is None:
        try:
            interfaces = local_interfaces()
        except OSError:
            return hash_router_id(my_node)
    for addrs in interfaces.values():
        normalized = [_to_ip(a) for a in addrs]
        if ip in normalized:
            for candidate in normalized:
                if candidate.version == 4:
                    return candidate
            return hash_router_id(my_node)
    return hash_router_id(my_node)


def local_address_exists(interfaces: Interfaces, addr: IPAddress | str) -> bool:
    """Return True if addr is assigned to any of interfaces."""
    ip = _to_ip(addr)
    return any(_to_ip(a) == ip for addrs in interfaces.values() for a in addrs)


def build_tcp_md5_sig(addr: IPAddress | str, key: str) -> bytes:
    """Build the TCP_MD5SIG socket option value for peer addr and key."""
    ip = _to_ip(addr)
    key_bytes = key.encode("utf-8")
    if len(key_bytes) > TCP_MD5SIG_MAXKEYLEN:
        raise ValueError(f"TCP MD5 key longer than {TCP_MD5SIG_MAXKEYLEN} bytes")
    storage = bytearray(126)
    if ip.version == 4:
        family = socket.AF_INET
        storage[2:6] = ip.packed
    else:
        family = socket.AF_INET6
        storage[6:22] = ip.packed
    return _MD5SIG.pack(family, bytes(storage), 0, len(key_bytes), 0, key_bytes)


def _split_host_port(addr: str) -> tuple[str, str]:
    if addr.startswith("["):
        end = addr.find("]")
        if end < 0:
            raise ValueError(f"address {addr}: missing ']' in address")
        host, rest = addr[1:end], addr[end + 1 :]
        if not rest.startswith(":"):
            raise ValueError(f"address {addr}: missing port in address")
        return host, rest[1:]
    if ":" not in addr:
        raise ValueError(f"address {addr}: missing port in address")
    host, port = addr.rsplit(":", 1)
    if ":" in host:
        raise ValueError(f"address {addr}: too many colons in address")
    return host, port


def _resolve_remote(addr: str) -> tuple[IPAddress, int]:
    try:
        host, port = _split_host_port(addr)
        infos = socket.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    except (ValueError, socket.gaierror) as exc:
        raise ValueError(f"invalid remote address: {exc}") from exc
    if not infos:
        raise ValueError(f"invalid remote address: {addr}")
    sockaddr = infos[0][4]
    return _to_ip(str(sockaddr[0]).split("%", 1)[0]), int(sockaddr[1])


def _local_sockaddr(family: int, src: IPAddress | None) -> tuple:
    if family == socket.AF_INET:
        host = str(src) if src is not None and src.version == 4 else "0.0.0.0"
        return (host, 0)
    scope = 0
    if src is None:
        host = "::"
    elif src.version == 4:
        host = f"::ffff:{src}"
    else:
        host = str(ipaddress.IPv6Address(src.packed))
        if src.scope_id:
            scope = socket.if_nametoindex(src.scope_id)
    return (host, 0, 0, scope)


def dial_md5(
    addr: str,
    src_addr: IPAddress | str | None = None,
    password: str = "",
    timeout: float = DEFAULT_DIAL_TIMEOUT,
) -> socket.socket:
    """Open a TCP connection to addr ("host:port"), with TCP MD5 signing if password is set.

    If src_addr is given it must be assigned to a local interface and is used
    as the source address.
    """
    src = _to_ip(src_addr) if src_addr is not None else None
    if src is not None:
        try:
            interfaces = local_interfaces()
        except OSError as exc:
            raise OSError(f"Querying local interfaces: {exc}") from exc
        if not local_address_exists(interfaces, src):
            raise OSError(f"Address {str(src)!r} doesn't exist on this host")

    remote_ip, remote_port = _resolve_remote(addr)
    if remote_ip.version == 4:
        family = socket.AF_INET
        remote: tuple = (str(remote_ip), remote_port)
    else:
        family = socket.AF_INET6
        remote = (str(remote_ip), remote_port, 0, 0)

    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        if password:
            sock.setsockopt(socket.IPPROTO_TCP, TCP_MD5SIG, build_tcp_md5_sig(remote_ip, password))
        sock.bind(_local_sockaddr(family, src))
        sock.settimeout(timeout)
        try:
            sock.connect(remote)
        except socket.timeout as exc:
            raise TimeoutError("timeout") from exc
        sock.settimeout(None)
    except BaseException:
        sock.close()
        raise
    return sock
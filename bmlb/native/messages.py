"""Encoding and decoding of the BGP messages exchanged with a peer."""

from __future__ import annotations

import ipaddress
import struct
from dataclasses import dataclass
from typing import Any, Iterable, Union

from bmlb.bgp import Advertisement

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

MARKER = b"\xff" * 16
HEADER_LEN = 19
MIN_OPEN_LEN = 37
AS_TRANS = 23456

MSG_OPEN = 1
MSG_UPDATE = 2
MSG_NOTIFICATION = 3
MSG_KEEPALIVE = 4

CAP_MULTIPROTOCOL = 1
CAP_FOUR_BYTE_ASN = 65
OPT_CAPABILITIES = 2

_HEADER = struct.Struct(">16sHB")
_OPEN_BODY = struct.Struct(">BHHIB")
_OPEN = struct.Struct(">16sHB BHH4s BBB BBHH BBHH BBI")

NOTIFICATION_CODES: dict[int, str] = {
    0x0100: "Message header error (unspecific)",
    0x0101: "Connection not synchronized",
    0x0102: "Bad message length",
    0x0103: "Bad message type",
    0x0200: "OPEN message error (unspecific)",
    0x0201: "Unsupported version number",
    0x0202: "Bad peer AS",
    0x0203: "Bad BGP identifier",
    0x0204: "Unsupported optional parameter",
    0x0206: "Unacceptable hold time",
    0x0207: "Unsupported capability",
    0x0300: "UPDATE message error (unspecific)",
    0x0301: "Malformed Attribute List",
    0x0302: "Unrecognized Well-known Attribute",
    0x0303: "Missing Well-known Attribute",
    0x0304: "Attribute Flags Error",
    0x0305: "Attribute Length Error",
    0x0306: "Invalid ORIGIN Attribute",
    0x0308: "Invalid NEXT_HOP Attribute",
    0x0309: "Optional Attribute Error",
    0x030A: "Invalid Network Field",
    0x030B: "Malformed AS_PATH",
    0x0400: "Hold Timer Expired (unspecific)",
    0x0500: "BGP FSM state error (unspecific)",
    0x0501: "Receive Unexpected Message in OpenSent State",
    0x0502: "Receive Unexpected Message in OpenConfirm State",
    0x0503: "Receive Unexpected Message in Established State",
    0x0601: "Maximum Number of Prefixes Reached",
    0x0602: "Administrative Shutdown",
    0x0603: "Peer De-configured",
    0x0604: "Administrative Reset",
    0x0605: "Connection Rejected",
    0x0606: "Other Configuration Change",
    0x0607: "Connection Collision Resolution",
    0x0608: "Out of Resources",
}


class BGPNotification(Exception):
    """The peer sent a NOTIFICATION message."""

    def __init__(self, code: int) -> None:
        self.code = code
        self.description = NOTIFICATION_CODES.get(code, "unknown code")
        super().__init__(f"got BGP notification code 0x{code:04x} ({self.description})")


@dataclass
class OpenResult:
    """What the peer announced in its OPEN message."""

    asn: int = 0
    hold_time: float = 0.0
    mp4: bool = False
    mp6: bool = False
    fbasn: bool = False


def _to_ip(value: IPAddress | str | None) -> IPAddress | None:
    if value is None:
        return None
    ip = ipaddress.ip_address(value) if isinstance(value, str) else value
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


def _write(w: Any, data: bytes) -> None:
    if hasattr(w, "sendall"):
        w.sendall(data)
    else:
        w.write(data)


def _read_up_to(r: Any, n: int) -> bytes:
    chunks: list[bytes] = []
    remaining = n
    use_recv = hasattr(r, "recv") and not hasattr(r, "read")
    while remaining > 0:
        chunk = r.recv(remaining) if use_recv else r.read(remaining)
        if not chunk:
            break
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def _read_exact(r: Any, n: int) -> bytes:
    data = _read_up_to(r, n)
    if not data and n > 0:
        raise EOFError("EOF")
    if len(data) < n:
        raise EOFError("unexpected EOF")
    return data


class _Cursor:
    def __init__(self, data: bytes) -> None:
        self.data = data
        self.pos = 0

    @property
    def at_end(self) -> bool:
        return self.pos >= len(self.data)

    def take_up_to(self, n: int) -> bytes:
        chunk = self.data[self.pos : self.pos + n]
        self.pos += len(chunk)
        return chunk

    def take(self, n: int) -> bytes:
        chunk = self.take_up_to(n)
        if not chunk and n > 0:
            raise EOFError("EOF")
        if len(chunk) < n:
            raise EOFError("unexpected EOF")
        return chunk


def send_open(w: Any, asn: int, router_id: IPAddress | str, hold_time: float) -> None:
    """Write an OPEN announcing IPv4/IPv6 unicast and 4-byte ASN support."""
    rid = _to_ip(router_id)
    if rid is None or rid.version != 4:
        raise ValueError("non-ipv4 address used as RouterID")
    asn16 = AS_TRANS if asn > 65535 else asn & 0xFFFF
    msg = _OPEN.pack(
        MARKER,
        _OPEN.size,
        MSG_OPEN,
        4,
        asn16,
        int(hold_time) & 0xFFFF,
        rid.packed,
        20,
        OPT_CAPABILITIES,
        18,
        CAP_MULTIPROTOCOL,
        4,
        1,
        1,
        CAP_MULTIPROTOCOL,
        4,
        2,
        1,
        CAP_FOUR_BYTE_ASN,
        4,
        asn & 0xFFFFFFFF,
    )
    _write(w, msg)


def read_notification(r: Any) -> None:
    """Read a NOTIFICATION body (header already consumed) and raise it."""
    (code,) = struct.unpack(">H", _read_exact(r, 2))
    raise BGPNotification(code)


def read_open(r: Any) -> OpenResult:
    """Read the peer's OPEN message."""
    marker, length, mtype = _HEADER.unpack(_read_exact(r, HEADER_LEN))
    if marker != MARKER:
        raise ValueError("synchronization error, incorrect header marker")
    if mtype == MSG_NOTIFICATION:
        read_notification(r)
    if mtype != MSG_OPEN:
        raise ValueError(f"message type is not OPEN, got {mtype}, want 1")
    if length < MIN_OPEN_LEN:
        raise ValueError(f"message length {length} too small to be OPEN")

    body = _Cursor(_read_up_to(r, length - HEADER_LEN))
    version, asn16, hold, _router_id, _opts_len = _OPEN_BODY.unpack(body.take(_OPEN_BODY.size))
    if version != 4:
        raise ValueError("wrong BGP version")
    if hold != 0 and hold < 3:
        raise ValueError(f"invalid hold time {hold}, must be 0 or >=3s")

    result = OpenResult(asn=asn16, hold_time=float(hold))
    _read_options(body, result)
    return result


def _read_options(cur: _Cursor, result: OpenResult) -> None:
    while not cur.at_end:
        opt_type, opt_len = cur.take(2)
        if opt_type != OPT_CAPABILITIES:
            raise ValueError(f"unknown BGP option type {opt_type}")
        option = _Cursor(cur.take_up_to(opt_len))
        _read_capabilities(option, result)
        missing = opt_len - option.pos
        if missing:
            raise ValueError(f"{missing} trailing garbage bytes after capability option")


def _read_capabilities(cur: _Cursor, result: OpenResult) -> None:
    while not cur.at_end:
        code, cap_len = cur.take(2)
        data = _Cursor(cur.take_up_to(cap_len))
        if code == CAP_FOUR_BYTE_ASN:
            (result.asn,) = struct.unpack(">I", data.take(4))
            result.fbasn = True
        elif code == CAP_MULTIPROTOCOL:
            afi, safi = struct.unpack(">HH", data.take(4))
            if afi == 1 and safi == 1:
                result.mp4 = True
            elif afi == 2 and safi == 1:
                result.mp6 = True
        else:
            data.take_up_to(cap_len)
        leftover = cap_len - data.pos
        if leftover:
            raise ValueError(f"{leftover} leftover bytes after decoding capability {code}")


def bytes_for_bits(n: int) -> int:
    """Return the number of whole bytes needed to hold n bits."""
    return (n + 7) // 8


def _prefix_parts(prefix: Any) -> tuple[int, bytes]:
    if isinstance(prefix, str):
        prefix = ipaddress.ip_network(prefix, strict=False)
    if isinstance(prefix, (ipaddress.IPv4Interface, ipaddress.IPv6Interface)):
        ip, length = prefix.ip, prefix.network.prefixlen
    else:
        ip, length = prefix.network_address, prefix.prefixlen
    ip = _to_ip(ip)
    if ip is None or ip.version != 4:
        raise ValueError(f"cannot encode non-IPv4 prefix {prefix}")
    return length, ip.packed


def encode_prefixes(prefixes: Iterable[Any]) -> bytes:
    """Encode IPv4 prefixes as NLRI: length byte followed by the significant bytes."""
    out = bytearray()
    for prefix in prefixes:
        length, packed = _prefix_parts(prefix)
        out.append(length)
        out += packed[: bytes_for_bits(length)]
    return bytes(out)


def _encode_path_attrs(
    asn: int,
    ibgp: bool,
    fbasn: bool,
    default_next_hop: IPAddress | str | None,
    adv: Advertisement,
) -> bytes:
    out = bytearray(b"\x40\x01\x01\x02\x40\x02")  # origin incomplete, then as-path
    if ibgp:
        out.append(0)
    elif fbasn:
        out += bytes([6, 2, 1]) + struct.pack(">I", asn & 0xFFFFFFFF)
    else:
        out += bytes([4, 2, 1]) + struct.pack(">H", asn & 0xFFFF)

    out += b"\x40\x03\x04"
    next_hop = _to_ip(adv.next_hop)
    if next_hop is not None:
        if next_hop.version == 4:
            out += next_hop.packed
    else:
        default = _to_ip(default_next_hop)
        if default is not None:
            out += default.packed

    if ibgp:
        out += b"\x40\x05\x04" + struct.pack(">I", adv.local_pref & 0xFFFFFFFF)

    if adv.communities:
        out += bytes([0xC0, 8, (len(adv.communities) * 4) & 0xFF])
        for community in adv.communities:
            out += struct.pack(">I", community & 0xFFFFFFFF)
    return bytes(out)


def send_update(
    w: Any,
    asn: int,
    ibgp: bool,
    fbasn: bool,
    default_next_hop: IPAddress | str | None,
    adv: Advertisement,
) -> None:
    """Write an UPDATE announcing adv."""
    attrs = _encode_path_attrs(asn, ibgp, fbasn, default_next_hop, adv)
    nlri = encode_prefixes([adv.prefix])
    length = HEADER_LEN + 4 + len(attrs) + len(nlri)
    msg = MARKER + struct.pack(">HBHH", length & 0xFFFF, MSG_UPDATE, 0, len(attrs) & 0xFFFF)
    _write(w, msg + attrs + nlri)


def send_withdraw(w: Any, prefixes: Iterable[Any]) -> None:
    """Write an UPDATE withdrawing prefixes."""
    withdrawn = encode_prefixes(prefixes)
    length = HEADER_LEN + 2 + len(withdrawn) + 2
    msg = MARKER + struct.pack(">HBH", length & 0xFFFF, MSG_UPDATE, len(withdrawn) & 0xFFFF)
    _write(w, msg + withdrawn + b"\x00\x00")


def send_keepalive(w: Any) -> None:
    """Write a KEEPALIVE."""
    _write(w, MARKER + struct.pack(">HB", HEADER_LEN, MSG_KEEPALIVE))
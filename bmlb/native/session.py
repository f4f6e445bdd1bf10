"""BGP sessions spoken directly to a peer over TCP."""

from __future__ import annotations

import ipaddress
import logging
import socket
import struct
import threading
import time
from typing import Any, Callable, Mapping, Union

from bmlb.backoff import Backoff
from bmlb.bgp import Advertisement, Session, SessionManager
from bmlb.metrics import BGPStats
from bmlb.native.messages import (
    HEADER_LEN,
    MARKER,
    MSG_NOTIFICATION,
    BGPNotification,
    read_notification,
    read_open,
    send_keepalive,
    send_open,
    send_update,
    send_withdraw,
)
from bmlb.native.netutil import dial_md5, get_router_id

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

CONNECT_TIMEOUT = 10.0
MAX_COMMUNITIES = 63

_HEADER = struct.Struct(">16sHB")

_log = logging.getLogger(__name__)


class SessionClosed(Exception):
    """The session has been closed by its owner."""

    def __init__(self) -> None:
        super().__init__("session closed")


def _to_ip(value: IPAddress | str | None) -> IPAddress | None:
    if value is None:
        return None
    if isinstance(value, str):
        value = ipaddress.ip_address(value.split("%", 1)[0])
    if isinstance(value, ipaddress.IPv6Address) and value.ipv4_mapped is not None:
        return value.ipv4_mapped
    return value


def _prefix_version(prefix: Any) -> int | None:
    if isinstance(prefix, str):
        try:
            prefix = ipaddress.ip_network(prefix, strict=False)
        except ValueError:
            return None
    address = getattr(prefix, "network_address", None)
    if address is None:
        return getattr(prefix, "version", None)
    ip = _to_ip(address)
    return ip.version if ip is not None else None


def validate(adv: Advertisement) -> None:
    """Raise ValueError if adv cannot be announced by a native session."""
    if _prefix_version(adv.prefix) != 4:
        raise ValueError(f'cannot advertise non-v4 prefix "{adv.prefix}"')
    next_hop = _to_ip(adv.next_hop)
    if next_hop is not None and next_hop.version != 4:
        raise ValueError(f'next-hop must be IPv4, got "{next_hop}"')
    if len(adv.communities) > MAX_COMMUNITIES:
        raise ValueError(
            f"max supported communities is {MAX_COMMUNITIES}, got {len(adv.communities)}"
        )


def _recv_exact(conn: Any, n: int) -> bytes | None:
    chunks: list[bytes] = []
    remaining = n
    while remaining > 0:
        chunk = conn.recv(remaining)
        if not chunk:
            return None
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


class NativeSession(Session):
    """One BGP session that keeps itself connected and pushes route updates."""

    def __init__(
        self,
        logger: logging.Logger | logging.LoggerAdapter,
        addr: str,
        src_addr: IPAddress | None,
        my_asn: int,
        router_id: IPAddress | None,
        asn: int,
        hold_time: float,
        keepalive_time: float,
        password: str,
        my_node: str,
        *,
        dial: Callable[..., Any],
        stats: BGPStats,
    ) -> None:
        self.addr = addr
        self.src_addr = src_addr
        self.my_asn = my_asn
        self.router_id = router_id if router_id is not None and router_id.version == 4 else None
        self.asn = asn
        self.hold_time = hold_time
        self.keepalive_time = keepalive_time
        self.password = password
        self.my_node = my_node
        self._logger = logger
        self._log_prefix = f"peer={addr} localASN={my_asn} peerASN={asn}"
        self._dial = dial
        self._stats = stats
        self._backoff = Backoff()

        self._cond = threading.Condition(threading.Lock())
        self._closed = False
        self._closed_event = threading.Event()
        self._hold_changed = threading.Event()
        self._conn: Any = None
        self._peer_fbasn = False
        self._actual_hold_time = 0.0
        self._default_next_hop: IPAddress | None = None
        self._advertised: dict[str, Advertisement] = {}
        self._new: dict[str, Advertisement] | None = None

        self._stats.new_session(addr)
        threading.Thread(target=self._send_keepalives, daemon=True).start()
        threading.Thread(target=self._run, daemon=True).start()

    def _error(self, text: str, *args: Any) -> None:
        self._logger.error("%s " + text, self._log_prefix, *args)

    def set(self, *args: Advertisement) -> None:
        """Replace the advertisements the peer should receive.

        Changes reach the peer asynchronously.
        """
        new: dict[str, Advertisement] = {}
        for adv in args:
            validate(adv)
            new[str(adv.prefix)] = adv
        with self._cond:
            self._new = new
            self._stats.pending_prefixes(self.addr, len(new))
            self._cond.notify_all()

    def close(self) -> None:
        """Shut the session down for good."""
        with self._cond:
            self._closed = True
            self._abort()
        self._closed_event.set()
        self._hold_changed.set()

    def _run(self) -> None:
        try:
            while True:
                try:
                    self._connect()
                except SessionClosed:
                    return
                except Exception as exc:  # noqa: BLE001 - any failure means retry
                    self._error("op=connect error=%s msg=failed to connect to peer", exc)
                    if self._closed_event.wait(self._backoff.duration()):
                        return
                    continue
                self._stats.session_up(self.addr)
                self._backoff.reset()
                self._logger.info("%s event=sessionUp msg=BGP session established", self._log_prefix)

                if not self._send_updates():
                    return
                self._stats.session_down(self.addr)
                self._logger.warning("%s event=sessionDown msg=BGP session down", self._log_prefix)
        finally:
            self._stats.delete_session(self.addr)

    def _send_updates(self) -> bool:
        with self._cond:
            if self._closed:
                return False
            if self._conn is None:
                return True

            ibgp = self.my_asn == self.asn
            fbasn = self._peer_fbasn

            if self._new is not None:
                self._advertised, self._new = self._new, None

            for key, adv in self._advertised.items():
                try:
                    send_update(self._conn, self.my_asn, ibgp, fbasn, self._default_next_hop, adv)
                except OSError as exc:
                    self._abort()
                    self._error("op=sendUpdate ip=%s error=%s msg=failed to send BGP update", key, exc)
                    return True
                self._stats.update_sent(self.addr)
            self._stats.advertised_prefixes(self.addr, len(self._advertised))

            while True:
                while self._new is None and self._conn is not None:
                    self._cond.wait()
                if self._closed:
                    return False
                if self._conn is None:
                    return True

                new = self._new
                for key, adv in new.items():
                    old = self._advertised.get(key)
                    if old is not None and adv.equal(old):
                        continue
                    try:
                        send_update(self._conn, self.my_asn, ibgp, fbasn, self._default_next_hop, adv)
                    except OSError as exc:
                        self._abort()
                        self._error(
                            "op=sendUpdate prefix=%s error=%s msg=failed to send BGP update", key, exc
                        )
                        return True
                    self._stats.update_sent(self.addr)

                withdrawn = [adv.prefix for key, adv in self._advertised.items() if key not in new]
                if withdrawn:
                    try:
                        send_withdraw(self._conn, withdrawn)
                    except OSError as exc:
                        self._abort()
                        for prefix in withdrawn:
                            self._error(
                                "op=sendWithdraw prefix=%s error=%s msg=failed to send BGP withdraw",
                                prefix,
                                exc,
                            )
                        return True
                    self._stats.update_sent(self.addr)

                self._advertised, self._new = new, None
                self._stats.advertised_prefixes(self.addr, len(self._advertised))

    def _connect(self) -> None:
        with self._cond:
            if self._closed:
                raise SessionClosed()

            deadline = time.monotonic() + CONNECT_TIMEOUT
            try:
                conn = self._dial(self.addr, self.src_addr, self.password, CONNECT_TIMEOUT)
            except Exception as exc:
                raise OSError(f'dial "{self.addr}": {exc}') from exc

            try:
                conn.settimeout(max(deadline - time.monotonic(), 0.001))
                self._default_next_hop = _to_ip(str(conn.getsockname()[0]))

                router_id = self.router_id
                if router_id is None:
                    router_id = get_router_id(self._default_next_hop, self.my_node)

                try:
                    send_open(conn, self.my_asn, router_id, self.hold_time)
                except OSError as exc:
                    raise OSError(f'send OPEN to "{self.addr}": {exc}') from exc
                try:
                    op = read_open(conn)
                except (OSError, EOFError, ValueError, BGPNotification) as exc:
                    raise ValueError(f'read OPEN from "{self.addr}": {exc}') from exc
                if op.asn != self.asn:
                    raise ValueError(f"unexpected peer ASN {op.asn}, want {self.asn}")
                self._peer_fbasn = op.fbasn
                if self.my_asn > 65536 and not self._peer_fbasn:
                    raise ValueError("peer does not support 4-byte ASNs")

                conn.settimeout(None)
            except BaseException:
                conn.close()
                raise

            threading.Thread(target=self._consume_bgp, args=(conn,), daemon=True).start()

            try:
                send_keepalive(conn)
            except OSError as exc:
                conn.close()
                raise OSError(f'accepting peer OPEN from "{self.addr}": {exc}') from exc

            self._actual_hold_time = min(self.hold_time, op.hold_time)
            self._hold_changed.set()
            self._conn = conn

    def _send_keepalives(self) -> None:
        interval: float | None = None
        while True:
            changed = self._hold_changed.wait(interval)
            if self._closed:
                return
            if changed:
                self._hold_changed.clear()
                with self._cond:
                    hold = self._actual_hold_time
                interval = hold / 3 if hold else None
                continue
            try:
                self._send_keepalive()
            except SessionClosed:
                return

    def _send_keepalive(self) -> None:
        with self._cond:
            if self._closed:
                raise SessionClosed()
            if self._conn is None:
                return
            try:
                send_keepalive(self._conn)
            except OSError as exc:
                self._abort()
                self._error("op=sendKeepalive error=%s msg=failed to send keepalive", exc)

    def _consume_bgp(self, conn: Any) -> None:
        """Read and discard the peer's messages until the connection breaks."""
        try:
            while True:
                header = _recv_exact(conn, HEADER_LEN)
                if header is None:
                    return
                marker, length, mtype = _HEADER.unpack(header)
                if marker != MARKER:
                    return
                if mtype == MSG_NOTIFICATION:
                    try:
                        read_notification(conn)
                    except (BGPNotification, OSError, EOFError) as exc:
                        self._error(
                            "event=peerNotification error=%s msg=peer sent notification, closing session",
                            exc,
                        )
                    return
                if length > HEADER_LEN and _recv_exact(conn, length - HEADER_LEN) is None:
                    return
        except OSError:
            return
        finally:
            with self._cond:
                if self._conn is conn:
                    self._abort()
                else:
                    conn.close()

    def _abort(self) -> None:
        """Drop the connection, if any; the caller holds the lock."""
        if self._conn is not None:
            try:
                self._conn.shutdown(socket.SHUT_RDWR)
            except (OSError, AttributeError):
                pass
            self._conn.close()
            self._conn = None
            self._stats.session_down(self.addr)
        if self._new is not None:
            self._advertised, self._new = self._new, None
            self._stats.pending_prefixes(self.addr, len(self._advertised))
        self._cond.notify_all()


class NativeSessionManager(SessionManager):
    """Hands out native BGP sessions; needs no shared state between them."""

    def __init__(
        self,
        logger: logging.Logger | None = None,
        *,
        dial: Callable[..., Any] = dial_md5,
        stats: BGPStats | None = None,
    ) -> None:
        self.logger = logger if logger is not None else _log
        self._dial = dial
        self._stats = stats if stats is not None else BGPStats()

    def new_session(
        self,
        logger: Any,
        addr: str,
        src_addr: IPAddress | str | None,
        my_asn: int,
        router_id: IPAddress | str | None,
        asn: int,
        hold_time: float,
        keepalive_time: float,
        password: str,
        my_node: str,
        bfd_profile: str,
    ) -> NativeSession:
        """Start a session that connects to addr and keeps itself in sync."""
        if not isinstance(logger, (logging.Logger, logging.LoggerAdapter)):
            logger = self.logger
        return NativeSession(
            logger,
            addr,
            _to_ip(src_addr),
            my_asn,
            _to_ip(router_id),
            asn,
            hold_time,
            keepalive_time,
            password,
            my_node,
            dial=self._dial,
            stats=self._stats,
        )

    def sync_bfd_profiles(self, profiles: Mapping[str, Any]) -> None:
        """Native sessions have no BFD support; always raises RuntimeError."""
        raise RuntimeError("bfd profiles not supported in native mode")
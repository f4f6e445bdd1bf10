import ipaddress
import socket
import sys
from collections import namedtuple
from unittest import mock

import pytest

from bmlb.native.netutil import (
    build_tcp_md5_sig,
    dial_md5,
    get_router_id,
    hash_router_id,
    local_address_exists,
    local_interfaces,
)

FakeAddr = namedtuple("FakeAddr", "family address netmask broadcast ptp")


def _fake_if_addrs():
    return {
        "lo": [
            FakeAddr(socket.AF_INET, "127.0.0.1", None, None, None),
            FakeAddr(socket.AF_INET6, "::1", None, None, None),
        ],
        "eth0": [
            FakeAddr(-1, "de:ad:be:ef:00:00", None, None, None),
            FakeAddr(socket.AF_INET6, "fe80::1%eth0", None, None, None),
        ],
    }


def test_hash_router_id_check_value():
    assert hash_router_id("123456789") == ipaddress.IPv4Address("38.57.244.203")


def test_hash_router_id_empty():
    assert hash_router_id("") == ipaddress.IPv4Address("0.0.0.0")


def test_hash_router_id_deterministic_and_distinct():
    assert hash_router_id("node-a") == hash_router_id("node-a")
    assert hash_router_id("node-a") != hash_router_id("node-b")


def test_get_router_id_ipv4_used_as_is():
    ip = ipaddress.ip_address("10.0.0.5")
    assert get_router_id(ip, "node", {}) == ip


def test_get_router_id_ipv6_picks_ipv4_on_same_interface():
    interfaces = {
        "eth0": [ipaddress.ip_address("10.0.0.1")],
        "eth1": [ipaddress.ip_address("1000::5"), ipaddress.ip_address("10.9.9.9")],
    }
    assert get_router_id(ipaddress.ip_address("1000::5"), "node", interfaces) == ipaddress.ip_address("10.9.9.9")


def test_get_router_id_ipv6_without_ipv4_hashes_node():
    interfaces = {"eth1": [ipaddress.ip_address("1000::5")]}
    assert get_router_id("1000::5", "node", interfaces) == hash_router_id("node")


def test_get_router_id_unknown_address_hashes_node():
    interfaces = {"eth0": [ipaddress.ip_address("10.0.0.1")]}
    assert get_router_id("2000::1", "other", interfaces) == hash_router_id("other")


def test_local_address_exists():
    interfaces = {"eth0": [ipaddress.ip_address("10.0.0.1"), ipaddress.ip_address("1000::1")]}
    assert local_address_exists(interfaces, "10.0.0.1")
    assert local_address_exists(interfaces, ipaddress.ip_address("1000::1"))
    assert not local_address_exists(interfaces, "10.0.0.2")


def test_local_interfaces_parses_psutil_output():
    with mock.patch("bmlb.native.netutil.psutil.net_if_addrs", return_value=_fake_if_addrs()):
        result = local_interfaces()
    assert result["lo"] == [ipaddress.ip_address("127.0.0.1"), ipaddress.ip_address("::1")]
    assert result["eth0"] == [ipaddress.ip_address("fe80::1")]


def test_tcp_md5_sig_ipv4():
    key = "secret"
    addr = ipaddress.ip_address("10.1.2.3")
    sig = build_tcp_md5_sig(addr, key)
    assert len(sig) == 216
    assert sig[:2] == socket.AF_INET.to_bytes(2, sys.byteorder)
    assert addr.packed in sig
    assert key.encode() in sig
    assert len(key).to_bytes(2, sys.byteorder) + b"\x00" * 4 + key.encode() in sig


def test_tcp_md5_sig_ipv6():
    key = "secret"
    addr = ipaddress.ip_address("1000::abcd")
    sig = build_tcp_md5_sig(addr, key)
    assert len(sig) == len(build_tcp_md5_sig("10.1.2.3", key))
    assert sig[:2] == socket.AF_INET6.to_bytes(2, sys.byteorder)
    assert addr.packed in sig


def test_tcp_md5_sig_key_too_long():
    with pytest.raises(ValueError):
        build_tcp_md5_sig("10.1.2.3", "secret" * 20)


@pytest.fixture
def listener():
    srv = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    srv.bind(("127.0.0.1", 0))
    srv.listen(1)
    yield srv
    srv.close()


def test_dial_connects(listener):
    host, port = listener.getsockname()
    conn = dial_md5(f"{host}:{port}", timeout=5)
    try:
        assert conn.getpeername() == (host, port)
        peer, _ = listener.accept()
        peer.close()
    finally:
        conn.close()


def test_dial_with_local_source(listener):
    host, port = listener.getsockname()
    with mock.patch("bmlb.native.netutil.psutil.net_if_addrs", return_value=_fake_if_addrs()):
        conn = dial_md5(f"{host}:{port}", ipaddress.ip_address("127.0.0.1"), timeout=5)
    try:
        assert conn.getsockname()[0] == "127.0.0.1"
    finally:
        conn.close()


def test_dial_unknown_source_address():
    with mock.patch("bmlb.native.netutil.psutil.net_if_addrs", return_value=_fake_if_addrs()):
        with pytest.raises(OSError, match="doesn't exist on this host"):
            dial_md5("127.0.0.1:179", "192.0.2.1", timeout=1)


def test_dial_missing_port():
    with pytest.raises(ValueError, match="invalid remote address"):
        dial_md5("127.0.0.1", timeout=1)


def test_dial_refused():
    probe = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    probe.bind(("127.0.0.1", 0))
    port = probe.getsockname()[1]
    probe.close()
    with pytest.raises(OSError):
        dial_md5(f"127.0.0.1:{port}", timeout=2)
import ipaddress

import pytest

from bmlb.bgp import Advertisement, Session, SessionManager


def make(**kw):
    base = dict(
        prefix="1.2.3.0/24",
        next_hop="10.20.30.40",
        local_pref=42,
        communities=[1234, 2345],
    )
    base.update(kw)
    return Advertisement(**base)


def test_string_inputs_are_parsed():
    adv = make()
    assert adv.prefix == ipaddress.ip_network("1.2.3.0/24")
    assert adv.next_hop == ipaddress.ip_address("10.20.30.40")


def test_equal_identical():
    assert make().equal(make())


@pytest.mark.parametrize(
    "change",
    [
        {"prefix": "1.2.4.0/24"},
        {"next_hop": "10.20.30.41"},
        {"next_hop": None},
        {"local_pref": 43},
        {"communities": [1234]},
    ],
)
def test_equal_detects_difference(change):
    assert not make().equal(make(**change))


def test_equal_ipv4_mapped_next_hop():
    a = make(next_hop="10.20.30.40")
    b = make(next_hop=ipaddress.ip_address("::ffff:10.20.30.40"))
    assert a.equal(b)


def test_equal_both_without_next_hop():
    assert make(next_hop=None).equal(make(next_hop=None))


def test_session_is_abstract():
    with pytest.raises(TypeError):
        Session()


def test_session_manager_is_abstract():
    with pytest.raises(TypeError):
        SessionManager()


class _Recorder(Session):
    def __init__(self):
        self.advs = None
        self.closed = False

    def set(self, *args):
        self.advs = list(args)

    def close(self):
        self.closed = True


def test_session_context_manager_closes():
    with _Recorder() as s:
        s.set(make())
        assert len(s.advs) == 1
    assert s.closed is True
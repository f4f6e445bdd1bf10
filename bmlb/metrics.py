"""In-process labelled gauges and counters for the allocator and BGP sessions."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field

NAMESPACE = "metallb"


@dataclass
class MetricVec:
    """A family of numeric samples keyed by the value of one label."""

    subsystem: str
    name: str
    help: str
    label_name: str
    namespace: str = NAMESPACE
    _values: dict[str, float] = field(default_factory=dict, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    @property
    def full_name(self) -> str:
        return "_".join(part for part in (self.namespace, self.subsystem, self.name) if part)

    def set(self, label: str, value: float) -> None:
        with self._lock:
            self._values[label] = float(value)

    def inc(self, label: str, amount: float = 1.0) -> None:
        with self._lock:
            self._values[label] = self._values.get(label, 0.0) + float(amount)

    def get(self, label: str) -> float:
        """Return the sample for label; an absent sample reads as zero."""
        with self._lock:
            return self._values.get(label, 0.0)

    def delete(self, label: str) -> bool:
        """Drop the sample for label, returning whether it existed."""
        with self._lock:
            return self._values.pop(label, None) is not None

    def __contains__(self, label: object) -> bool:
        with self._lock:
            return label in self._values

    def items(self) -> list[tuple[str, float]]:
        with self._lock:
            return sorted(self._values.items())


def _gauge(subsystem: str, name: str, help_text: str, label: str) -> MetricVec:
    return MetricVec(subsystem=subsystem, name=name, help=help_text, label_name=label)


class AllocatorStats:
    """Per-pool address usage gauges."""

    def __init__(self) -> None:
        self.pool_capacity = _gauge(
            "allocator", "addresses_total", "Number of usable IP addresses, per pool", "pool"
        )
        self.pool_active = _gauge(
            "allocator", "addresses_in_use_total", "Number of IP addresses in use, per pool", "pool"
        )
        self.pool_allocated = _gauge(
            "allocator", "services_allocated_total", "Number of services allocated, per pool", "pool"
        )

    def delete_pool(self, name: str) -> None:
        for vec in (self.pool_capacity, self.pool_active, self.pool_allocated):
            vec.delete(name)


class BGPStats:
    """Per-peer BGP session metrics."""

    def __init__(self) -> None:
        self.session_up_gauge = _gauge(
            "bgp", "session_up", "BGP session state (1 is up, 0 is down)", "peer"
        )
        self.updates_sent = _gauge(
            "bgp", "updates_total", "Number of BGP UPDATE messages sent", "peer"
        )
        self.prefixes = _gauge(
            "bgp",
            "announced_prefixes_total",
            "Number of prefixes currently being advertised on the BGP session",
            "peer",
        )
        self.pending = _gauge(
            "bgp",
            "pending_prefixes_total",
            "Number of prefixes that should be advertised on the BGP session",
            "peer",
        )

    def new_session(self, addr: str) -> None:
        self.session_up_gauge.set(addr, 0)
        self.prefixes.set(addr, 0)
        self.pending.set(addr, 0)
        self.updates_sent.inc(addr, 0)

    def delete_session(self, addr: str) -> None:
        for vec in (self.session_up_gauge, self.prefixes, self.pending, self.updates_sent):
            vec.delete(addr)

    def session_up(self, addr: str) -> None:
        self.session_up_gauge.set(addr, 1)
        self.prefixes.set(addr, 0)

    def session_down(self, addr: str) -> None:
        self.session_up_gauge.set(addr, 0)
        self.prefixes.set(addr, 0)

    def update_sent(self, addr: str) -> None:
        self.updates_sent.inc(addr, 1)

    def pending_prefixes(self, addr: str, n: int) -> None:
        self.pending.set(addr, n)

    def advertised_prefixes(self, addr: str, n: int) -> None:
        self.prefixes.set(addr, n)
        self.pending.set(addr, n)


allocator_stats = AllocatorStats()
bgp_stats = BGPStats()
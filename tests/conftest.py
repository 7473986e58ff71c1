"""
Brief: Global pytest configuration: per-test 10s timeout and an in-memory
multicast network for protocol tests.

Inputs:
  - None

Outputs:
  - None
"""

import ipaddress
import os
import queue
import signal
import sys
import threading
import time

import pytest

# Ensure 'src' is on sys.path so 'lanbuoy' package is importable in tests
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
SRC_DIR = os.path.join(ROOT, "src")
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)

from lanbuoy.config.settings import ResolverConfig, ResponderConfig  # noqa: E402
from lanbuoy.dispatch import TransportPool  # noqa: E402
from lanbuoy.records import (  # noqa: E402
    MDNS_PORT,
    AddressRecord,
    Message,
    PtrRecord,
    SrvRecord,
    TxtRecord,
    decode_message,
    encode_messages,
)
from lanbuoy.transports.multicast import Datagram, Interface  # noqa: E402


def _alarm_handler(signum, frame):
    """
    Brief: Signal handler that raises TimeoutError when alarm triggers.

    Inputs:
      - signum: signal number (int)
      - frame: current frame (ignored)

    Outputs:
      - None: Raises TimeoutError to fail the test
    """
    raise TimeoutError("Test exceeded 10 seconds")


# Install handler if supported on this platform
if hasattr(signal, "SIGALRM"):
    signal.signal(signal.SIGALRM, _alarm_handler)


@pytest.fixture(autouse=True)
def enforce_test_timeout():
    """
    Brief: Enforce a hard 10-second timeout for each test.

    Inputs:
      - None

    Outputs:
      - None: Cancels alarm after test
    """
    if hasattr(signal, "SIGALRM"):
        signal.alarm(10)
        try:
            yield
        finally:
            signal.alarm(0)
    else:
        # Fallback: no-op on platforms without SIGALRM
        yield


def make_interface(host_octet=10, name="fake0", index=1):
    return Interface(
        name=name,
        index=index,
        ipv4=(f"192.0.2.{host_octet}",),
        ipv4_networks=(ipaddress.ip_network("192.0.2.0/24"),),
    )


class _FakeChannel:
    def __init__(self, transport):
        self._transport = transport
        self.queue = queue.Queue()

    def recv(self, timeout):
        if self._transport.closed:
            return None
        try:
            return self.queue.get(timeout=timeout)
        except queue.Empty:
            return None


class FakeTransport:
    """In-memory stand-in for MulticastTransport attached to a FakeNetwork."""

    def __init__(self, network, interface):
        self.network = network
        self._interface = interface
        self._channel = _FakeChannel(self)
        self.closed = False

    @property
    def interfaces(self):
        return [self._interface]

    def channels(self):
        return [self._channel]

    def receive(self, packet, source):
        if not self.closed:
            self._channel.queue.put(Datagram(packet, source, self._interface))

    def send(self, packet, interface=None):
        if self.closed:
            return False
        self.network.deliver(packet, (self._interface.ipv4[0], MDNS_PORT))
        return True

    def close(self):
        self.closed = True


class FakeNetwork:
    """
    Brief: One shared link; every packet reaches every attached transport,
    the sender included (multicast loopback).

    Inputs:
      - None

    Outputs:
      - FakeNetwork with a `sent` log of (source, packet) tuples.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.transports = []
        self.sent = []
        self._next_octet = 10

    def pool(self):
        """A TransportPool whose transports live on this network (one host)."""
        with self._lock:
            octet = self._next_octet
            self._next_octet += 1
        iface = make_interface(octet)

        def factory(interfaces, ip_version):
            t = FakeTransport(self, iface)
            with self._lock:
                self.transports.append(t)
            return t

        return TransportPool(factory=factory)

    def deliver(self, packet, source):
        with self._lock:
            self.sent.append((source, packet))
            targets = list(self.transports)
        for t in targets:
            t.receive(packet, source)

    def inject(self, message, source=("192.0.2.200", MDNS_PORT)):
        """Send a Message (or raw bytes) from an outside peer."""
        packets = [message] if isinstance(message, bytes) else encode_messages(message)
        for p in packets:
            self.deliver(p, source)

    def messages(self, since=0):
        with self._lock:
            sent = list(self.sent[since:])
        return [decode_message(p) for _, p in sent]

    def mark(self):
        with self._lock:
            return len(self.sent)


def wait_for(predicate, timeout=3.0, interval=0.02):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


def build_response(
    instance,
    service="_test--xxxx._tcp",
    domain="local.",
    port=8888,
    host="peer.local.",
    address="192.0.2.50",
    text=("txtv=0",),
    ttl=120,
    parts=("ptr", "srv", "txt", "addr"),
):
    """A response as a peer responder would send it, limited to `parts`."""
    service_fqdn = f"{service}.{domain}"
    fqdn = f"{instance}.{service_fqdn}"
    answers, additionals = [], []
    if "ptr" in parts:
        answers.append(PtrRecord(name=service_fqdn, ttl=ttl, target=fqdn))
    if "srv" in parts:
        additionals.append(SrvRecord(name=fqdn, ttl=ttl, port=port, target=host))
    if "txt" in parts:
        additionals.append(TxtRecord(name=fqdn, ttl=ttl, text=tuple(text)))
    if "addr" in parts:
        additionals.append(
            AddressRecord(name=host, ttl=ttl, address=ipaddress.ip_address(address))
        )
    return Message(is_response=True, answers=answers, additionals=additionals)


@pytest.fixture
def wait():
    return wait_for


@pytest.fixture
def response():
    return build_response


@pytest.fixture
def network():
    return FakeNetwork()


@pytest.fixture
def pool(network):
    return network.pool()


@pytest.fixture
def responder_config():
    return ResponderConfig(
        host_name="testhost",
        probe_interval=0.02,
        announce_interval=0.05,
        answer_suppression_window=0,
        shutdown_timeout=1.0,
    )


@pytest.fixture
def resolver_config():
    return ResolverConfig(
        query_initial_interval=0.05,
        query_max_interval=0.2,
        followup_interval=0.05,
    )

"""
Brief: Tests for lanbuoy.responder over the in-memory multicast network:
probing, conflict handling, announcing, answering and goodbyes.

Inputs:
  - None

Outputs:
  - None
"""

import ipaddress
import time

import pytest

from lanbuoy.errors import (
    InvalidArgumentError,
    InvalidRegistrationError,
    NameConflictError,
    RegistrationError,
    TransportError,
)
from lanbuoy.dispatch import TransportPool
from lanbuoy.records import (
    TYPE_ANY,
    TYPE_PTR,
    TYPE_SRV,
    AddressRecord,
    Message,
    PtrRecord,
    Question,
    SrvRecord,
    TxtRecord,
)
from lanbuoy.responder import (
    STATE_TRANSITIONS,
    RegistrationState,
    build_registration,
    compare_probe_records,
    register,
    register_proxy,
)
from lanbuoy.scope import Scope

NAME = "test--xxxxxxxxxxxx"
SERVICE = "_test--xxxx._tcp"
DOMAIN = "local."
PORT = 8888
TEXT = ["txtv=0", "lo=1", "la=2"]
FQDN = f"{NAME}.{SERVICE}.{DOMAIN}"


def _responses(network, since=0):
    return [m for m in network.messages(since) if m.is_response]


def _probes(network, name=FQDN):
    return [
        m
        for m in network.messages()
        if m.is_probe and any(q.name.lower() == name.lower() for q in m.questions)
    ]


def test_register_probes_then_announces(network, pool, responder_config, wait):
    server = register(NAME, SERVICE, DOMAIN, PORT, TEXT, config=responder_config, pool=pool)
    try:
        assert server.instance == NAME
        assert server.service_instance_name() == FQDN

        probes = _probes(network)
        assert len(probes) == 3
        assert probes[0].questions[0].qtype == TYPE_ANY
        assert {type(r) for r in probes[0].authorities} == {SrvRecord, TxtRecord}

        assert wait(lambda: server.state is RegistrationState.REGISTERED)
        announcements = [m for m in _responses(network) if m.answers]
        assert len(announcements) == 2
        records = announcements[0].answers
        names = {(type(r).__name__, r.name.lower()) for r in records}
        assert ("PtrRecord", f"{SERVICE}.{DOMAIN}") in names
        assert ("PtrRecord", f"_services._dns-sd._udp.{DOMAIN}") in names
        srv = next(r for r in records if isinstance(r, SrvRecord))
        assert (srv.port, srv.target, srv.ttl, srv.unique) == (PORT, "testhost.local.", 3200, True)
        txt = next(r for r in records if isinstance(r, TxtRecord))
        assert list(txt.text) == TEXT
        addr = next(r for r in records if isinstance(r, AddressRecord))
        assert addr.name == "testhost.local."
        assert addr.address == ipaddress.ip_address("192.0.2.10")
    finally:
        server.shutdown()


def test_shutdown_sends_goodbye_and_is_idempotent(network, pool, responder_config, wait):
    server = register(NAME, SERVICE, DOMAIN, PORT, TEXT, config=responder_config, pool=pool)
    assert wait(lambda: server.state is RegistrationState.REGISTERED)
    mark = network.mark()

    server.shutdown()
    server.shutdown()
    assert server.state is RegistrationState.CLOSED

    goodbyes = [m for m in _responses(network, mark) if m.answers]
    assert len(goodbyes) == 1
    assert all(r.ttl == 0 for r in goodbyes[0].answers)
    assert {type(r) for r in goodbyes[0].answers} == {
        PtrRecord,
        SrvRecord,
        TxtRecord,
        AddressRecord,
    }
    assert all(t.closed for t in network.transports)


def test_scope_end_sends_goodbye(network, pool, responder_config, wait):
    scope = Scope()
    server = register(
        NAME, SERVICE, DOMAIN, PORT, TEXT, config=responder_config, pool=pool, scope=scope
    )
    assert wait(lambda: server.state is RegistrationState.REGISTERED)
    mark = network.mark()
    scope.cancel()
    assert server.wait_closed(2.0)
    assert server.state is RegistrationState.CLOSED

    goodbyes = [m for m in _responses(network, mark) if m.answers]
    assert len(goodbyes) == 1
    assert all(r.ttl == 0 for r in goodbyes[0].answers)
    assert any(isinstance(r, PtrRecord) and r.target == FQDN for r in goodbyes[0].answers)
    assert all(t.closed for t in network.transports)

    server.shutdown()
    assert len([m for m in _responses(network, mark) if m.answers]) == 1


def test_abandon_stops_without_goodbye(network, pool, responder_config, wait):
    server = register(NAME, SERVICE, DOMAIN, PORT, TEXT, config=responder_config, pool=pool)
    assert wait(lambda: server.state is RegistrationState.REGISTERED)
    mark = network.mark()
    server.abandon()
    assert server.state is RegistrationState.CLOSED
    assert not any(r.ttl == 0 for m in _responses(network, mark) for r in m.answers)
    assert all(t.closed for t in network.transports)

    server.shutdown()
    assert not any(r.ttl == 0 for m in _responses(network, mark) for r in m.answers)


def test_context_manager_shuts_down(pool, responder_config):
    with register(NAME, SERVICE, DOMAIN, PORT, TEXT, config=responder_config, pool=pool) as server:
        assert server.state in (RegistrationState.ANNOUNCING, RegistrationState.REGISTERED)
    assert server.state is RegistrationState.CLOSED


def test_answers_ptr_query_with_additionals(network, pool, responder_config, wait):
    server = register(NAME, SERVICE, DOMAIN, PORT, TEXT, config=responder_config, pool=pool)
    try:
        assert wait(lambda: server.state is RegistrationState.REGISTERED)
        mark = network.mark()
        network.inject(
            Message(is_response=False, questions=[Question(f"{SERVICE}.{DOMAIN}", TYPE_PTR)])
        )
        assert wait(lambda: _responses(network, mark))
        (answer,) = _responses(network, mark)
        assert [type(r) for r in answer.answers] == [PtrRecord]
        assert answer.answers[0].target == FQDN
        assert {type(r) for r in answer.additionals} == {SrvRecord, TxtRecord, AddressRecord}
    finally:
        server.shutdown()


def test_subtype_query_answered_like_direct_query(network, pool, responder_config, wait):
    server = register(
        NAME, f"{SERVICE},_fancy", DOMAIN, PORT, TEXT, config=responder_config, pool=pool
    )
    try:
        assert wait(lambda: server.state is RegistrationState.REGISTERED)
        mark = network.mark()
        network.inject(
            Message(
                is_response=False,
                questions=[Question(f"_fancy._sub.{SERVICE}.{DOMAIN}", TYPE_PTR)],
            )
        )
        assert wait(lambda: _responses(network, mark))
        (answer,) = _responses(network, mark)
        assert answer.answers[0].name == f"_fancy._sub.{SERVICE}.{DOMAIN}"
        assert answer.answers[0].target == FQDN
        assert {type(r) for r in answer.additionals} == {SrvRecord, TxtRecord, AddressRecord}
    finally:
        server.shutdown()


def test_known_answer_suppression(network, pool, responder_config, wait):
    server = register(NAME, SERVICE, DOMAIN, PORT, TEXT, config=responder_config, pool=pool)
    try:
        assert wait(lambda: server.state is RegistrationState.REGISTERED)
        mark = network.mark()
        network.inject(
            Message(
                is_response=False,
                questions=[Question(f"{SERVICE}.{DOMAIN}", TYPE_PTR)],
                answers=[PtrRecord(name=f"{SERVICE}.{DOMAIN}", ttl=3000, target=FQDN)],
            )
        )
        time.sleep(0.3)
        assert _responses(network, mark) == []

        # A known answer with less than half its TTL left is refreshed.
        network.inject(
            Message(
                is_response=False,
                questions=[Question(f"{SERVICE}.{DOMAIN}", TYPE_PTR)],
                answers=[PtrRecord(name=f"{SERVICE}.{DOMAIN}", ttl=100, target=FQDN)],
            )
        )
        assert wait(lambda: _responses(network, mark))
    finally:
        server.shutdown()


def test_duplicate_answers_suppressed_within_window(network, pool, responder_config, wait):
    cfg = responder_config.copy(update={"answer_suppression_window": 5.0})
    server = register(NAME, SERVICE, DOMAIN, PORT, TEXT, config=cfg, pool=pool)
    try:
        assert wait(lambda: server.state is RegistrationState.REGISTERED)
        mark = network.mark()
        query = Message(is_response=False, questions=[Question(FQDN, TYPE_SRV)])
        network.inject(query)
        assert wait(lambda: _responses(network, mark))
        network.inject(query)
        time.sleep(0.3)
        assert len(_responses(network, mark)) == 1
    finally:
        server.shutdown()


def test_conflicting_name_is_renamed(network, responder_config):
    cfg = responder_config.copy(update={"probe_interval": 0.1})
    first = register(NAME, SERVICE, DOMAIN, 1000, TEXT, config=cfg, pool=network.pool())
    try:
        second = register(NAME, SERVICE, DOMAIN, 2000, TEXT, config=cfg, pool=network.pool())
        try:
            assert first.instance == NAME
            assert second.instance == f"{NAME} (2)"
            assert second.service_instance_name() == f"{NAME} (2).{SERVICE}.{DOMAIN}"
        finally:
            second.shutdown()
    finally:
        first.shutdown()


def test_conflict_without_renames_left_raises(network, responder_config):
    cfg = responder_config.copy(update={"probe_interval": 0.1})
    first = register(NAME, SERVICE, DOMAIN, 1000, TEXT, config=cfg, pool=network.pool())
    try:
        with pytest.raises(NameConflictError) as excinfo:
            register(
                NAME,
                SERVICE,
                DOMAIN,
                2000,
                TEXT,
                config=cfg.copy(update={"max_conflicts": 0}),
                pool=network.pool(),
            )
        assert excinfo.value.name == NAME
    finally:
        first.shutdown()


def test_conflicting_response_while_registered_reprobes(network, pool, responder_config, wait):
    server = register(NAME, SERVICE, DOMAIN, PORT, TEXT, config=responder_config, pool=pool)
    try:
        assert wait(lambda: server.state is RegistrationState.REGISTERED)
        network.inject(
            Message(
                is_response=True,
                answers=[SrvRecord(name=FQDN, ttl=120, port=9, target="intruder.local.")],
            )
        )
        renamed = f"{NAME} (2).{SERVICE}.{DOMAIN}"
        assert wait(lambda: server.instance == f"{NAME} (2)")
        assert wait(lambda: len(_probes(network, renamed)) == 3)
        assert wait(lambda: server.state is RegistrationState.REGISTERED)
    finally:
        server.shutdown()


def test_own_looped_back_records_are_not_conflicts(network, pool, responder_config, wait):
    server = register(NAME, SERVICE, DOMAIN, PORT, TEXT, config=responder_config, pool=pool)
    try:
        assert wait(lambda: server.state is RegistrationState.REGISTERED)
        network.inject(
            Message(
                is_response=True,
                answers=[
                    SrvRecord(name=FQDN, ttl=3200, port=PORT, target="testhost.local."),
                    SrvRecord(name=FQDN, ttl=0, port=1, target="gone.local."),
                ],
            )
        )
        time.sleep(0.2)
        assert server.instance == NAME
    finally:
        server.shutdown()


def test_set_text_reannounces(network, pool, responder_config, wait):
    server = register(NAME, SERVICE, DOMAIN, PORT, TEXT, config=responder_config, pool=pool)
    try:
        assert wait(lambda: server.state is RegistrationState.REGISTERED)
        mark = network.mark()
        server.set_text(["txtv=1"])

        def announced():
            for m in _responses(network, mark):
                for r in m.answers:
                    if isinstance(r, TxtRecord) and r.text == ("txtv=1",):
                        return True
            return False

        assert wait(announced)
        assert server.instance == NAME
        with pytest.raises(InvalidRegistrationError):
            server.set_text(["x" * 256])
    finally:
        server.shutdown()
    with pytest.raises(RegistrationError):
        server.set_text(["late=1"])


def test_register_proxy_publishes_given_host_and_addresses(network, pool, responder_config, wait):
    server = register_proxy(
        "printer",
        "_ipp._tcp",
        DOMAIN,
        631,
        "office-printer",
        ["192.0.2.77", "2001:db8::77"],
        ["rp=ipp/print"],
        config=responder_config,
        pool=pool,
    )
    try:
        assert wait(lambda: server.state is RegistrationState.REGISTERED)
        announce = next(m for m in _responses(network) if m.answers)
        addrs = {r.address for r in announce.answers if isinstance(r, AddressRecord)}
        assert addrs == {ipaddress.ip_address("192.0.2.77"), ipaddress.ip_address("2001:db8::77")}
        srv = next(r for r in announce.answers if isinstance(r, SrvRecord))
        assert srv.target == "office-printer.local."
    finally:
        server.shutdown()


@pytest.mark.parametrize(
    "args",
    [
        ("", SERVICE, DOMAIN, PORT, TEXT),
        ("has.dot", SERVICE, DOMAIN, PORT, TEXT),
        ("x" * 64, SERVICE, DOMAIN, PORT, TEXT),
        (NAME, "", DOMAIN, PORT, TEXT),
        (NAME, "_http", DOMAIN, PORT, TEXT),
        (NAME, SERVICE, "", PORT, TEXT),
        (NAME, SERVICE, DOMAIN, 0, TEXT),
        (NAME, SERVICE, DOMAIN, 65536, TEXT),
        (NAME, SERVICE, DOMAIN, True, TEXT),
        (NAME, SERVICE, DOMAIN, PORT, ["k=" + "v" * 254]),
        (NAME, SERVICE, DOMAIN, PORT, "not-a-list"),
    ],
)
def test_invalid_registration_raises_before_any_io(args):
    opened = []

    def factory(interfaces, ip_version):
        opened.append(1)
        raise AssertionError("no transport expected")

    with pytest.raises(InvalidRegistrationError) as excinfo:
        register(*args, pool=TransportPool(factory=factory))
    assert isinstance(excinfo.value, InvalidArgumentError)
    assert opened == []


@pytest.mark.parametrize("host,ips", [("", ["192.0.2.1"]), ("h", []), ("h", ["bogus"])])
def test_invalid_proxy_registration(host, ips):
    with pytest.raises(InvalidRegistrationError):
        register_proxy(NAME, SERVICE, DOMAIN, PORT, host, ips, TEXT)


def test_transport_failure_is_registration_error(responder_config):
    def factory(interfaces, ip_version):
        raise TransportError("no multicast interface")

    with pytest.raises(RegistrationError) as excinfo:
        register(
            NAME, SERVICE, DOMAIN, PORT, TEXT, config=responder_config, pool=TransportPool(factory=factory)
        )
    assert isinstance(excinfo.value.__cause__, TransportError)


def test_build_registration_host_names():
    reg = build_registration(NAME, SERVICE, "local", PORT, None, host="box")
    assert reg.host_name == "box.local."
    assert reg.domain == "local."
    assert reg.text == ()
    reg = build_registration(NAME, SERVICE, DOMAIN, PORT, None, host="box.example.com")
    assert reg.host_name == "box.example.com."
    reg = build_registration(NAME, SERVICE, DOMAIN, PORT, None)
    assert reg.host_name.endswith(".local.")


def test_probe_tiebreak_ordering():
    ours = [SrvRecord(name=FQDN, ttl=120, port=2000, target="b.local.")]
    lower = [SrvRecord(name=FQDN, ttl=120, port=1000, target="b.local.")]
    higher = [SrvRecord(name=FQDN, ttl=120, port=3000, target="b.local.")]
    assert compare_probe_records(ours, lower) == 1
    assert compare_probe_records(ours, higher) == -1
    assert compare_probe_records(ours, [r.with_ttl(5) for r in ours]) == 0
    more = ours + [SrvRecord(name=FQDN, ttl=120, port=2000, target="c.local.")]
    assert compare_probe_records(more, ours) == 1
    assert compare_probe_records(ours, more) == -1


def test_transition_table():
    s = RegistrationState
    assert STATE_TRANSITIONS[s.PROBING] == {s.ANNOUNCING, s.CLOSED}
    assert s.PROBING in STATE_TRANSITIONS[s.REGISTERED]
    assert s.PROBING in STATE_TRANSITIONS[s.ANNOUNCING]
    assert s.CLOSED in STATE_TRANSITIONS[s.REGISTERED]
    assert STATE_TRANSITIONS[s.GOODBYE] == {s.CLOSED}
    assert STATE_TRANSITIONS[s.CLOSED] == frozenset()
    assert all(state in STATE_TRANSITIONS for state in s)

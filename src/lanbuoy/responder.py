"""mDNS responder: claim, advertise and withdraw a service instance.

Brief:
  `register()` validates a registration, acquires a shared dispatcher and
  starts a `Server` whose state-machine thread probes for the instance name,
  announces the record set, answers queries, and sends a goodbye on
  shutdown. `register()` returns once probing has finished so a terminal
  name conflict surfaces synchronously.

Inputs:
  - Instance label, service type (with optional ``,subtype`` suffixes),
    domain, port and TXT strings

Outputs:
  - Server handles
"""

from __future__ import annotations

import enum
import logging
import queue
import random
import socket
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

from cachetools import TTLCache

from .config.settings import ResponderConfig
from .dispatch import Dispatcher, TransportPool, default_pool
from .errors import (
    InvalidArgumentError,
    InvalidRegistrationError,
    NameConflictError,
    RegistrationError,
    TransportError,
)
from .records import (
    MAX_LABEL_LENGTH,
    MAX_TXT_STRING_LENGTH,
    SERVICES_ENUMERATION,
    TYPE_ANY,
    AddressRecord,
    IPAddress,
    Message,
    PtrRecord,
    Question,
    Record,
    SrvRecord,
    TxtRecord,
    join_name,
    normalize_domain,
    normalize_name,
    parse_addresses,
    parse_service,
    subtype_name,
    validate_label,
    validate_name,
)
from .scope import Scope
from .transports.multicast import Datagram, Interface

logger = logging.getLogger(__name__)

# Wait after losing a simultaneous-probe tiebreak (RFC 6762 section 8.2).
PROBE_DEFER_SECONDS = 1.0
INBOX_SIZE = 256
# Upper bound on how long the serving loop sleeps without an event.
IDLE_POLL_SECONDS = 1.0

_STOP = "stop"
_CONFLICT = "conflict"
_LOST_TIEBREAK = "lost-tiebreak"
_TEXT = "text"
_WAKE = object()


class RegistrationState(enum.Enum):
    PROBING = "probing"
    ANNOUNCING = "announcing"
    REGISTERED = "registered"
    GOODBYE = "goodbye"
    CLOSED = "closed"


STATE_TRANSITIONS: Dict[RegistrationState, frozenset] = {
    RegistrationState.PROBING: frozenset(
        {RegistrationState.ANNOUNCING, RegistrationState.CLOSED}
    ),
    RegistrationState.ANNOUNCING: frozenset(
        {
            RegistrationState.REGISTERED,
            RegistrationState.PROBING,
            RegistrationState.GOODBYE,
            RegistrationState.CLOSED,
        }
    ),
    RegistrationState.REGISTERED: frozenset(
        {
            RegistrationState.ANNOUNCING,
            RegistrationState.PROBING,
            RegistrationState.GOODBYE,
            RegistrationState.CLOSED,
        }
    ),
    RegistrationState.GOODBYE: frozenset({RegistrationState.CLOSED}),
    RegistrationState.CLOSED: frozenset(),
}


@dataclass
class Registration:
    """
    Brief: What a Server advertises.

    Inputs:
      - instance: Instance label; renamed on conflicts.
      - service: Base service type without domain (``_http._tcp``).
      - subtypes: Subtype labels (``_printer``).
      - domain: Domain with trailing dot.
      - host_name: SRV target FQDN.
      - port: Service port.
      - text: TXT strings.
      - ttl: TTL advertised on every record.
      - addresses: Explicit addresses (proxy registrations); empty means the
        addresses of the interface each packet goes out on.

    Outputs:
      - Registration instance.
    """

    instance: str
    service: str
    domain: str
    host_name: str
    port: int
    text: Tuple[str, ...] = ()
    subtypes: List[str] = field(default_factory=list)
    ttl: int = 3200
    addresses: List[IPAddress] = field(default_factory=list)

    def service_name(self) -> str:
        return join_name(self.service, self.domain)

    def instance_name(self) -> str:
        return join_name(self.instance, self.service, self.domain)

    def enumeration_name(self) -> str:
        return join_name(SERVICES_ENUMERATION, self.domain)

    def subtype_names(self) -> List[str]:
        return [subtype_name(s, self.service, self.domain) for s in self.subtypes]

    def unique_records(self, ttl: Optional[int] = None) -> List[Record]:
        """SRV and TXT for the instance; the records probing defends."""
        t = self.ttl if ttl is None else ttl
        name = self.instance_name()
        return [
            SrvRecord(name=name, ttl=t, port=self.port, target=self.host_name),
            TxtRecord(name=name, ttl=t, text=tuple(self.text)),
        ]

    def records(
        self, addresses: Sequence[IPAddress], ttl: Optional[int] = None
    ) -> List[Record]:
        """
        Brief: Full record set for one interface.

        Inputs:
          - addresses: Addresses published for the host name.
          - ttl: Override TTL (0 for goodbyes).

        Outputs:
          - list[Record]: Service PTR, subtype PTRs, enumeration PTR, SRV, TXT
            and A/AAAA records.
        """

        t = self.ttl if ttl is None else ttl
        instance_fqdn = self.instance_name()
        out: List[Record] = [
            PtrRecord(name=self.service_name(), ttl=t, target=instance_fqdn)
        ]
        out.extend(
            PtrRecord(name=sub, ttl=t, target=instance_fqdn)
            for sub in self.subtype_names()
        )
        out.append(
            PtrRecord(name=self.enumeration_name(), ttl=t, target=self.service_name())
        )
        out.extend(self.unique_records(t))
        out.extend(
            AddressRecord(name=self.host_name, ttl=t, address=a) for a in addresses
        )
        return out


def compare_probe_records(ours: Iterable[Record], theirs: Iterable[Record]) -> int:
    """
    Brief: Simultaneous probe tiebreak (RFC 6762 section 8.2).

    Inputs:
      - ours: Records we are probing for.
      - theirs: The other host's authority records for the same name.

    Outputs:
      - int: -1 when we lose, 0 when the record sets are identical, 1 when we
        win. Records are sorted by type then raw rdata and compared pairwise;
        a list that runs out first loses.
    """

    a = sorted((r.rtype, r.rdata_bytes()) for r in ours)
    b = sorted((r.rtype, r.rdata_bytes()) for r in theirs)
    if a == b:
        return 0
    return -1 if a < b else 1


def _dedupe(records: Iterable[Record]) -> List[Record]:
    seen = set()
    out: List[Record] = []
    for r in records:
        k = (r.key, r.data_key())
        if k in seen:
            continue
        seen.add(k)
        out.append(r)
    return out


class Server:
    """
    Brief: A running service registration.

    Inputs:
      - registration: What to advertise.
      - config: ResponderConfig with timing and TTL settings.
      - dispatcher: Shared dispatcher acquired from `pool`.
      - pool: TransportPool the dispatcher is released to on close.
      - scope: Optional Scope; ending it shuts the server down.

    Outputs:
      - Server instance. Use register()/register_proxy() rather than
        constructing one directly.

    Example use:
        >>> from lanbuoy import register
        >>> with register("Box", "_http._tcp", "local.", 8080, ["path=/"]) as srv:  # doctest: +SKIP
        ...     srv.state
        <RegistrationState.ANNOUNCING: 'announcing'>
    """

    def __init__(
        self,
        registration: Registration,
        config: ResponderConfig,
        dispatcher: Dispatcher,
        pool: TransportPool,
        scope: Optional[Scope] = None,
    ) -> None:
        self.registration = registration
        self.config = config
        self._dispatcher = dispatcher
        self._pool = pool
        self._scope = scope
        self._base_instance = registration.instance
        self._conflicts = 0

        self._lock = threading.Lock()
        self._state = RegistrationState.PROBING
        self._inbox: "queue.Queue" = queue.Queue(maxsize=INBOX_SIZE)
        self._stop = threading.Event()
        self._probed = threading.Event()
        self._closed = threading.Event()
        self._pending_text: Optional[Tuple[str, ...]] = None
        self._error: Optional[BaseException] = None
        self._shutdown_requested = False
        self._silent = False

        # (name, type, rdata) of everything this server has sent, so looped
        # back copies of earlier packets are never taken for conflicts.
        self._own_data: set = set()
        self._recent: Optional[TTLCache] = None
        if config.answer_suppression_window > 0:
            self._recent = TTLCache(maxsize=4096, ttl=config.answer_suppression_window)

        self._thread = threading.Thread(
            target=self._run,
            name=f"lanbuoy-responder-{registration.instance}",
            daemon=True,
        )

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------

    @property
    def state(self) -> RegistrationState:
        with self._lock:
            return self._state

    @property
    def instance(self) -> str:
        return self.registration.instance

    def service_instance_name(self) -> str:
        return self.registration.instance_name()

    def start(self) -> None:
        for interest in self._interests():
            self._dispatcher.listeners.subscribe(interest, self)
        self._thread.start()
        if self._scope is not None:
            self._scope.add_done_callback(self.shutdown)

    def wait_probed(self, timeout: Optional[float] = None) -> bool:
        """Block until probing succeeded, failed or was cut short."""
        return self._probed.wait(timeout)

    def wait_closed(self, timeout: Optional[float] = None) -> bool:
        return self._closed.wait(timeout)

    def set_text(self, text: Optional[Sequence[str]]) -> None:
        """
        Brief: Replace the TXT payload and re-announce it.

        Inputs:
          - text: New TXT strings.

        Outputs:
          - None.

        Raises:
          - InvalidRegistrationError: a string exceeds 255 bytes.
          - RegistrationError: the server is already shut down.
        """

        new_text = _validate_text(text)
        with self._lock:
            if self._shutdown_requested or self._state is RegistrationState.CLOSED:
                raise RegistrationError("server is shut down")
            self._pending_text = new_text
        self._wake()

    def shutdown(self) -> None:
        """
        Brief: Withdraw the registration.

        Inputs:
          - None.

        Outputs:
          - None. Blocks until the goodbye is sent or `shutdown_timeout`
            elapses; repeated calls (from any thread) are no-ops.
        """

        with self._lock:
            first = not self._shutdown_requested
            self._shutdown_requested = True
        if first:
            self._stop.set()
            self._wake()
            if self._scope is not None:
                self._scope.remove_done_callback(self.shutdown)
        if threading.current_thread() is self._thread:
            return
        if not self._thread.is_alive() and not self._thread.ident:
            # Never started: nothing was sent, just let go of the transport.
            self._finish()
            return
        self._closed.wait(self.config.shutdown_timeout)

    def abandon(self) -> None:
        """Stop like shutdown() but send no goodbye; peers age the records out by TTL."""
        with self._lock:
            if not self._shutdown_requested:
                self._silent = True
        self.shutdown()

    def __enter__(self) -> "Server":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

    # ------------------------------------------------------------------
    # Dispatch side (receive threads)
    # ------------------------------------------------------------------

    def handle_message(self, message: Message, datagram: Datagram) -> None:
        try:
            self._inbox.put_nowait((message, datagram))
        except queue.Full:
            logger.debug(
                "mDNS responder %r: inbox full, dropping packet", self.registration.instance
            )

    def _wake(self) -> None:
        try:
            self._inbox.put_nowait(_WAKE)
        except queue.Full:
            pass  # the loop is busy draining and re-checks its flags

    # ------------------------------------------------------------------
    # State machine (server thread)
    # ------------------------------------------------------------------

    def _interests(self) -> List[str]:
        reg = self.registration
        return [reg.service_name(), reg.host_name, reg.enumeration_name()]

    def _set_state(self, new: RegistrationState) -> None:
        with self._lock:
            old = self._state
            if new is old:
                return
            if new not in STATE_TRANSITIONS[old]:
                raise RegistrationError(
                    f"invalid registration transition {old.value} -> {new.value}"
                )
            self._state = new
        logger.debug(
            "mDNS responder %r: %s -> %s", self.registration.instance, old.value, new.value
        )

    def _run(self) -> None:
        try:
            while True:
                event = self._probe()
                self._probed.set()
                if event is _STOP:
                    break
                event = self._announce_and_serve()
                if event is _STOP:
                    break
                # Conflict while advertising: pick a new name and probe again.
                self._rename()
        except NameConflictError as exc:
            logger.warning("mDNS responder: %s", exc)
            self._error = exc
        except Exception as exc:
            logger.exception(
                "mDNS responder %r: state machine failed", self.registration.instance
            )
            self._error = RegistrationError(f"registration failed: {exc}")
        finally:
            self._finish()
            self._probed.set()

    def _probe(self) -> Optional[str]:
        """Probe until the name is ours; returns _STOP when interrupted."""
        self._set_state(RegistrationState.PROBING)
        event = self._pump(random.uniform(0, self.config.probe_interval))
        if event is _STOP:
            return _STOP
        if event is _CONFLICT:
            self._rename()

        sent = 0
        while sent < self.config.probe_count:
            self._send_probe()
            sent += 1
            event = self._pump(self.config.probe_interval)
            if event is _STOP:
                return _STOP
            if event is _CONFLICT:
                self._rename()
                sent = 0
            elif event is _LOST_TIEBREAK:
                logger.info(
                    "mDNS responder %r: lost simultaneous probe tiebreak, deferring",
                    self.registration.instance,
                )
                event = self._pump(PROBE_DEFER_SECONDS)
                if event is _STOP:
                    return _STOP
                if event is _CONFLICT:
                    self._rename()
                sent = 0
        return None

    def _announce_and_serve(self) -> str:
        while True:
            event = self._announce()
            if event is None:
                self._set_state(RegistrationState.REGISTERED)
                event = self._serve()
            if event is _TEXT:
                continue
            return event  # _STOP or _CONFLICT

    def _announce(self) -> Optional[str]:
        self._set_state(RegistrationState.ANNOUNCING)
        interval = self.config.announce_interval
        for i in range(self.config.announce_count):
            self._send_announcement()
            if i == self.config.announce_count - 1:
                break
            event = self._pump(interval)
            if event is not None:
                return event
            interval *= 2
        return None

    def _serve(self) -> str:
        while True:
            event = self._pump(IDLE_POLL_SECONDS)
            if event is not None:
                return event

    def _pump(self, seconds: float) -> Optional[str]:
        """
        Brief: Handle inbound packets for up to `seconds`.

        Inputs:
          - seconds: How long to wait.

        Outputs:
          - Optional[str]: None when the time elapsed quietly, otherwise the
            event (_STOP, _CONFLICT, _LOST_TIEBREAK, _TEXT) that cut the wait
            short.
        """

        deadline = time.monotonic() + max(0.0, seconds)
        while True:
            if self._stop.is_set():
                return _STOP
            text_event = self._apply_pending_text()
            if text_event is not None:
                return text_event
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            try:
                item = self._inbox.get(timeout=remaining)
            except queue.Empty:
                return None
            if item is _WAKE:
                continue
            message, datagram = item
            event = self._handle(message, datagram)
            if event is not None:
                return event

    def _apply_pending_text(self) -> Optional[str]:
        with self._lock:
            text, self._pending_text = self._pending_text, None
            state = self._state
        if text is None:
            return None
        self.registration.text = text
        logger.info("mDNS responder %r: TXT updated", self.registration.instance)
        if state in (RegistrationState.ANNOUNCING, RegistrationState.REGISTERED):
            return _TEXT
        return None

    def _handle(self, message: Message, datagram: Datagram) -> Optional[str]:
        state = self.state
        if message.is_response:
            if self._conflicts_with(message.records()):
                logger.info(
                    "mDNS responder %r: conflicting response from %s",
                    self.registration.instance,
                    datagram.source[0] if datagram.source else "?",
                )
                return _CONFLICT
            return None

        if state is RegistrationState.PROBING:
            if message.is_probe:
                return self._check_tiebreak(message)
            return None

        self._answer(message, datagram)
        return None

    def _conflicts_with(self, records: Iterable[Record]) -> bool:
        ours = {r.key: r for r in self.registration.unique_records()}
        for rec in records:
            mine = ours.get(rec.key)
            if mine is None or rec.is_goodbye:
                continue
            if mine.same_data(rec):
                continue
            if (rec.key, rec.data_key()) in self._own_data:
                continue
            return True
        return False

    def _check_tiebreak(self, message: Message) -> Optional[str]:
        name = normalize_name(self.registration.instance_name())
        if not any(normalize_name(q.name) == name for q in message.questions):
            return None
        theirs = [r for r in message.authorities if normalize_name(r.name) == name]
        if not theirs:
            return None
        if compare_probe_records(self.registration.unique_records(), theirs) < 0:
            return _LOST_TIEBREAK
        return None

    def _rename(self) -> None:
        self._conflicts += 1
        if self._conflicts > self.config.max_conflicts:
            raise NameConflictError(
                f"no free name for {self._base_instance!r} after "
                f"{self.config.max_conflicts} renames",
                name=self.registration.instance,
            )
        suffix = f" ({self._conflicts + 1})"
        base = self._base_instance
        while len((base + suffix).encode("utf-8")) > MAX_LABEL_LENGTH:
            base = base[:-1]
        old = self.registration.instance
        self.registration.instance = base + suffix
        logger.info(
            "mDNS responder: name conflict for %r, renaming to %r",
            old,
            self.registration.instance,
        )

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def _addresses_for(self, iface: Optional[Interface]) -> List[IPAddress]:
        if self.registration.addresses:
            return list(self.registration.addresses)
        if iface is None:
            return []
        out = iface.addresses()
        if self.config.ip_version == "v4":
            out = [a for a in out if a.version == 4]
        elif self.config.ip_version == "v6":
            out = [a for a in out if a.version == 6]
        return out

    def _targets(self, iface: Optional[Interface]) -> List[Optional[Interface]]:
        if iface is not None:
            return [iface]
        return list(self._dispatcher.interfaces) or [None]

    def _send(self, message: Message, iface: Optional[Interface]) -> None:
        for rec in message.records():
            self._own_data.add((rec.key, rec.data_key()))
        if not self._dispatcher.send(message, iface):
            logger.debug(
                "mDNS responder %r: nothing sent on %s",
                self.registration.instance,
                iface.name if iface else "any interface",
            )

    def _send_probe(self) -> None:
        reg = self.registration
        message = Message(
            is_response=False,
            questions=[Question(reg.instance_name(), TYPE_ANY, unicast=True)],
            authorities=reg.unique_records(),
        )
        self._send(message, None)

    def _send_announcement(self, ttl: Optional[int] = None) -> None:
        for iface in self._targets(None):
            records = self.registration.records(self._addresses_for(iface), ttl=ttl)
            self._send(Message(is_response=True, answers=records), iface)

    def _answer(self, message: Message, datagram: Datagram) -> None:
        """
        Brief: Answer the questions of one query on the interface it came in.

        Inputs:
          - message: Decoded query.
          - datagram: Source datagram (for the receiving interface).

        Outputs:
          - None. Known answers the querier already holds with at least half
            their TTL left are omitted, and records multicast on the same
            interface within the suppression window are skipped.
        """

        if not message.questions:
            return
        for iface in self._targets(datagram.interface):
            records = self.registration.records(self._addresses_for(iface))
            answers = _dedupe(
                r for q in message.questions for r in records if q.matches(r.name, r.rtype)
            )
            if not answers:
                continue

            # PTR answers pull in SRV/TXT/addresses, SRV answers the addresses.
            extra: List[Record] = []
            instance_fqdn = normalize_name(self.registration.instance_name())
            for r in answers:
                if isinstance(r, PtrRecord) and normalize_name(r.target) == instance_fqdn:
                    extra.extend(x for x in records if not isinstance(x, PtrRecord))
                elif isinstance(r, SrvRecord):
                    extra.extend(x for x in records if isinstance(x, AddressRecord))

            answers = [r for r in answers if not self._known(r, message.answers)]
            answers = self._unsuppressed(answers, iface)
            if not answers:
                continue
            answered = {(r.key, r.data_key()) for r in answers}
            additionals = [
                r for r in _dedupe(extra) if (r.key, r.data_key()) not in answered
            ]
            self._send(
                Message(is_response=True, answers=answers, additionals=additionals), iface
            )

    @staticmethod
    def _known(record: Record, known_answers: Sequence[Record]) -> bool:
        return any(
            k.same_data(record) and k.ttl * 2 >= record.ttl for k in known_answers
        )

    def _unsuppressed(
        self, answers: List[Record], iface: Optional[Interface]
    ) -> List[Record]:
        if self._recent is None:
            return answers
        scope_name = iface.name if iface is not None else ""
        out = []
        for r in answers:
            k = (scope_name, r.key, r.data_key())
            if k in self._recent:
                continue
            self._recent[k] = True
            out.append(r)
        return out

    def _finish(self) -> None:
        with self._lock:
            if self._closed.is_set():
                return
            state = self._state
            silent = self._silent
        if silent:
            logger.debug("mDNS responder %r: abandoned, no goodbye", self.registration.instance)
        elif state in (RegistrationState.ANNOUNCING, RegistrationState.REGISTERED):
            self._set_state(RegistrationState.GOODBYE)
            try:
                self._send_announcement(ttl=0)
            except Exception:
                logger.exception(
                    "mDNS responder %r: goodbye failed", self.registration.instance
                )
        if self.state is not RegistrationState.CLOSED:
            self._set_state(RegistrationState.CLOSED)
        self._dispatcher.listeners.unsubscribe_all(self)
        self._pool.release(self._dispatcher)
        if self._scope is not None:
            self._scope.remove_done_callback(self.shutdown)
        logger.info("mDNS responder %r: closed", self.registration.instance)
        self._closed.set()


# ----------------------------------------------------------------------
# Registration entry points
# ----------------------------------------------------------------------


def _validate_text(text: Optional[Sequence[str]]) -> Tuple[str, ...]:
    if text is None:
        return ()
    if isinstance(text, (str, bytes)):
        raise InvalidRegistrationError("text must be a sequence of strings")
    out = []
    for s in text:
        s = str(s)
        if len(s.encode("utf-8")) > MAX_TXT_STRING_LENGTH:
            raise InvalidRegistrationError(
                f"TXT string {s[:20]!r}... exceeds {MAX_TXT_STRING_LENGTH} bytes"
            )
        out.append(s)
    return tuple(out)


def _host_fqdn(host: Optional[str], domain: str) -> str:
    """A bare label goes under `domain`; a dotted name is taken as an FQDN."""
    if not host:
        host = socket.gethostname().split(".", 1)[0] or "localhost"
        return join_name(host, domain)
    host = host.strip()
    if "." in host.strip("."):
        return join_name(host)
    return join_name(host, domain)


def build_registration(
    instance: str,
    service: str,
    domain: str,
    port: int,
    text: Optional[Sequence[str]],
    *,
    host: Optional[str] = None,
    ips: Optional[Sequence[Union[str, IPAddress]]] = None,
    ttl: int = 3200,
) -> Registration:
    """
    Brief: Validate registration arguments.

    Inputs:
      - instance, service, domain, port, text: As for register().
      - host: Host label or FQDN; None uses the local host name.
      - ips: Explicit addresses (proxy registrations).
      - ttl: Record TTL.

    Outputs:
      - Registration

    Raises:
      - InvalidRegistrationError: any argument cannot be encoded.
    """

    try:
        validate_label(str(instance or ""), what="instance name")
        base, subtypes = parse_service(service)
        dom = normalize_domain(domain)
        host_name = _host_fqdn(host, dom)
        validate_name(host_name, what="host name")
        validate_name(join_name(instance, base, dom), what="service instance name")
        addresses = parse_addresses(ips or [])
    except InvalidRegistrationError:
        raise
    except InvalidArgumentError as exc:
        raise InvalidRegistrationError(str(exc)) from exc

    if isinstance(port, bool) or not isinstance(port, int) or not 1 <= port <= 65535:
        raise InvalidRegistrationError(f"port must be 1-65535, got {port!r}")

    return Registration(
        instance=str(instance),
        service=base,
        domain=dom,
        host_name=host_name,
        port=port,
        text=_validate_text(text),
        subtypes=subtypes,
        ttl=int(ttl),
        addresses=addresses,
    )


def _start(
    registration: Registration,
    config: ResponderConfig,
    interfaces: Optional[Sequence[Union[str, Interface]]],
    scope: Optional[Scope],
    pool: Optional[TransportPool],
) -> Server:
    pool = pool or default_pool()
    selection = list(interfaces) if interfaces is not None else list(config.interfaces)
    try:
        dispatcher = pool.acquire(selection, config.ip_version)
    except TransportError as exc:
        raise RegistrationError(f"cannot open multicast transport: {exc}") from exc

    server = Server(registration, config, dispatcher, pool, scope)
    server.start()
    server.wait_probed()
    if server._error is not None:
        server.wait_closed(config.shutdown_timeout)
        raise server._error
    logger.info(
        "mDNS responder: registered %s on port %d",
        registration.instance_name(),
        registration.port,
    )
    return server


def register(
    instance: str,
    service: str,
    domain: str,
    port: int,
    text: Optional[Sequence[str]],
    interfaces: Optional[Sequence[Union[str, Interface]]] = None,
    *,
    config: Optional[ResponderConfig] = None,
    scope: Optional[Scope] = None,
    pool: Optional[TransportPool] = None,
) -> Server:
    """
    Brief: Advertise a service instance on the local network.

    Inputs:
      - instance: Instance label (``Living Room``); must not contain '.'.
      - service: ``_name._tcp`` or ``_name._udp``, optionally followed by
        ``,subtype`` entries.
      - domain: Usually ``local.``.
      - port: 1-65535.
      - text: TXT strings (``key=value``), each at most 255 bytes.
      - interfaces: Interface names; None uses config.interfaces (or all).
      - config: ResponderConfig; defaults apply when None.
      - scope: Optional Scope whose end shuts the server down.
      - pool: TransportPool; defaults to the shared pool.

    Outputs:
      - Server: Past probing; announcing continues in the background.

    Raises:
      - InvalidRegistrationError: invalid arguments (before any I/O).
      - RegistrationError: no usable multicast transport.
      - NameConflictError: no free name after `max_conflicts` renames.
    """

    cfg = config or ResponderConfig()
    registration = build_registration(
        instance, service, domain, port, text, host=cfg.host_name, ttl=cfg.ttl
    )
    return _start(registration, cfg, interfaces, scope, pool)


def register_proxy(
    instance: str,
    service: str,
    domain: str,
    port: int,
    host: str,
    ips: Sequence[Union[str, IPAddress]],
    text: Optional[Sequence[str]],
    interfaces: Optional[Sequence[Union[str, Interface]]] = None,
    *,
    config: Optional[ResponderConfig] = None,
    scope: Optional[Scope] = None,
    pool: Optional[TransportPool] = None,
) -> Server:
    """
    Brief: Advertise a service on behalf of another host.

    Inputs:
      - host: Host label (placed under `domain`) or FQDN of the other host.
      - ips: At least one address of that host.
      - Remaining inputs as for register().

    Outputs:
      - Server

    Raises:
      - InvalidRegistrationError: invalid arguments, missing host or ips.
      - RegistrationError / NameConflictError: as for register().
    """

    if not str(host or "").strip():
        raise InvalidRegistrationError("missing host name")
    if not ips:
        raise InvalidRegistrationError("missing IP addresses")
    cfg = config or ResponderConfig()
    registration = build_registration(
        instance, service, domain, port, text, host=host, ips=ips, ttl=cfg.ttl
    )
    return _start(registration, cfg, interfaces, scope, pool)

"""Shared receive path and reference-counted transports.

Brief:
  A `Dispatcher` owns one multicast transport and one receive thread per
  socket. Every datagram is decoded once and offered to the listeners whose
  interest (a lowercase FQDN suffix) matches a name in the message.
  `TransportPool` hands out dispatchers keyed by interface selection and IP
  version, opening them lazily and closing them when the last user releases
  them.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple, Union

from .errors import DecodeError
from .records import MDNS_PORT, Message, decode_message, encode_messages, normalize_name
from .transports.multicast import Datagram, Interface, MulticastTransport

logger = logging.getLogger(__name__)

RECEIVE_POLL_SECONDS = 0.2


class Listener(Protocol):
    """Anything that wants decoded messages; must not block."""

    def handle_message(self, message: Message, datagram: Datagram) -> None:
        ...  # pragma: nocover protocol


class ListenerRegistry:
    """
    Brief: Listeners keyed by the name suffix they are interested in.

    Inputs:
      - None.

    Outputs:
      - ListenerRegistry instance.

    Example use:
        >>> reg = ListenerRegistry()
        >>> reg.subscribe("_http._tcp.local.", listener)  # doctest: +SKIP
        >>> reg.match(["My Box._http._tcp.local."])  # doctest: +SKIP
        [listener]
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_interest: Dict[str, List[Listener]] = {}

    def subscribe(self, interest: str, listener: Listener) -> None:
        key = normalize_name(interest)
        with self._lock:
            bucket = self._by_interest.setdefault(key, [])
            if not any(existing is listener for existing in bucket):
                bucket.append(listener)

    def unsubscribe(self, interest: str, listener: Listener) -> None:
        key = normalize_name(interest)
        with self._lock:
            bucket = self._by_interest.get(key)
            if not bucket:
                return
            bucket[:] = [existing for existing in bucket if existing is not listener]
            if not bucket:
                self._by_interest.pop(key, None)

    def unsubscribe_all(self, listener: Listener) -> None:
        with self._lock:
            for key in list(self._by_interest):
                bucket = self._by_interest[key]
                bucket[:] = [existing for existing in bucket if existing is not listener]
                if not bucket:
                    del self._by_interest[key]

    def interests(self) -> List[str]:
        with self._lock:
            return sorted(self._by_interest)

    def match(self, names: Iterable[str]) -> List[Listener]:
        """
        Brief: Listeners interested in any of the given names.

        Inputs:
          - names: Owner/question names from one message.

        Outputs:
          - list: Each matching listener once, in subscription order of the
            first interest that matched.
        """

        out: List[Listener] = []
        with self._lock:
            if not self._by_interest:
                return out
            for name in names:
                labels = normalize_name(name).rstrip(".").split(".")
                for i in range(len(labels)):
                    bucket = self._by_interest.get(".".join(labels[i:]) + ".")
                    if not bucket:
                        continue
                    for listener in bucket:
                        if not any(existing is listener for existing in out):
                            out.append(listener)
        return out


class Dispatcher:
    """
    Brief: Receive loop and send path shared by responders and resolvers.

    Inputs:
      - transport: MulticastTransport (or any object with channels(), send(),
        interfaces and close()).

    Outputs:
      - Dispatcher instance; call start() to spawn the receive threads.
    """

    def __init__(self, transport: MulticastTransport) -> None:
        self.transport = transport
        self.listeners = ListenerRegistry()
        self._closed = threading.Event()
        self._threads: List[threading.Thread] = []

    @property
    def interfaces(self) -> List[Interface]:
        return list(self.transport.interfaces)

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def start(self) -> None:
        for channel in self.transport.channels():
            t = threading.Thread(
                target=self._receive_loop,
                args=(channel,),
                name=f"lanbuoy-recv-{channel!r}",
                daemon=True,
            )
            t.start()
            self._threads.append(t)

    def _receive_loop(self, channel) -> None:  # type: ignore[no-untyped-def]
        while not self._closed.is_set():
            try:
                datagram = channel.recv(RECEIVE_POLL_SECONDS)
            except Exception:  # pragma: no cover - defensive: keep the loop alive
                logger.exception("mDNS dispatch: receive failed on %r", channel)
                continue
            if datagram is None:
                continue
            self.dispatch(datagram)

    def dispatch(self, datagram: Datagram) -> None:
        """
        Brief: Decode one datagram and fan it out to interested listeners.

        Inputs:
          - datagram: Raw payload, source address and receiving interface.

        Outputs:
          - None. Malformed packets and listener errors are logged and dropped.
        """

        source = datagram.source
        if len(source) >= 2 and int(source[1]) != MDNS_PORT:
            logger.debug("mDNS dispatch: ignoring legacy unicast packet from %s", source)
            return

        try:
            message = decode_message(datagram.data)
        except DecodeError as exc:
            logger.debug("mDNS dispatch: dropping packet from %s: %s", source, exc)
            return

        for listener in self.listeners.match(message.names()):
            try:
                listener.handle_message(message, datagram)
            except Exception:
                logger.exception("mDNS dispatch: listener %r failed", listener)

    def send(self, message: Message, interface: Optional[Interface] = None) -> bool:
        """Encode (splitting oversized messages) and multicast; False if nothing went out."""
        if self._closed.is_set():
            return False
        sent = False
        for packet in encode_messages(message):
            sent = self.transport.send(packet, interface) or sent
        return sent

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        self.transport.close()
        current = threading.current_thread()
        for t in self._threads:
            if t is not current:
                t.join(timeout=RECEIVE_POLL_SECONDS * 5)
        self._threads = []


TransportFactory = Callable[..., MulticastTransport]
PoolKey = Tuple[Tuple[str, ...], str]


class TransportPool:
    """
    Brief: Reference-counted dispatchers keyed by interface selection.

    Inputs:
      - factory: Callable (interfaces, ip_version) -> transport; defaults to
        MulticastTransport.open.

    Outputs:
      - TransportPool instance.

    Notes:
      - acquire() opens the transport on first use; release() closes it when
        the last reference goes away.
    """

    def __init__(self, factory: Optional[TransportFactory] = None) -> None:
        self._factory: TransportFactory = factory or MulticastTransport.open
        self._lock = threading.Lock()
        self._entries: Dict[PoolKey, Tuple[Dispatcher, int]] = {}

    @staticmethod
    def _key(
        interfaces: Optional[Sequence[Union[str, Interface]]], ip_version: str
    ) -> PoolKey:
        names = sorted(
            i.name if isinstance(i, Interface) else str(i) for i in (interfaces or [])
        )
        return (tuple(names), str(ip_version))

    def acquire(
        self,
        interfaces: Optional[Sequence[Union[str, Interface]]] = None,
        ip_version: str = "all",
    ) -> Dispatcher:
        """
        Brief: Get (and retain) the dispatcher for an interface selection.

        Inputs:
          - interfaces: Interface names/objects; None or empty for all.
          - ip_version: "v4", "v6" or "all".

        Outputs:
          - Dispatcher: Started and shared with other holders of the same key.

        Raises:
          - TransportError: the transport cannot be opened.
        """

        key = self._key(interfaces, ip_version)
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and not entry[0].closed:
                dispatcher, refs = entry
                self._entries[key] = (dispatcher, refs + 1)
                return dispatcher

            transport = self._factory(list(interfaces or []), ip_version)
            dispatcher = Dispatcher(transport)
            dispatcher.start()
            self._entries[key] = (dispatcher, 1)
            logger.debug("mDNS pool: opened transport for %s", key)
            return dispatcher

    def release(self, dispatcher: Dispatcher) -> None:
        """Drop one reference; closes the dispatcher with the last one."""
        to_close: Optional[Dispatcher] = None
        with self._lock:
            for key, (held, refs) in list(self._entries.items()):
                if held is not dispatcher:
                    continue
                if refs <= 1:
                    del self._entries[key]
                    to_close = held
                    logger.debug("mDNS pool: closing transport for %s", key)
                else:
                    self._entries[key] = (held, refs - 1)
                break
        if to_close is not None:
            to_close.close()

    def refcount(self, dispatcher: Dispatcher) -> int:
        with self._lock:
            for held, refs in self._entries.values():
                if held is dispatcher:
                    return refs
        return 0


_DEFAULT_POOL = TransportPool()


def default_pool() -> TransportPool:
    return _DEFAULT_POOL

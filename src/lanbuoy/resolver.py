"""mDNS/DNS-SD resolver: browse for service instances and look them up.

Brief:
  A `Resolver` holds a reference on a shared dispatcher. Each `browse()` or
  `lookup()` call starts a `QueryTask` thread bound to the caller's `Scope`:
  it multicasts PTR (or SRV/TXT) queries with exponential backoff, assembles
  `ServiceEntry` values from the responses, and pushes each complete entry
  once onto the caller's queue.

Notes:
  - The tracked-entry map is bounded by `ResolverConfig.max_entries`; a flood
    of unique instance names triggers the overflow policy instead of
    unbounded growth.
  - Goodbyes (TTL 0) and lapsed TTLs remove entries silently; a removed
    instance is delivered again when it next answers.
"""

from __future__ import annotations

import logging
import math
import queue
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from cachetools import TTLCache

from .config.settings import ResolverConfig
from .dispatch import Dispatcher, TransportPool, default_pool
from .errors import InvalidArgumentError, MdnsError
from .records import (
    TYPE_A,
    TYPE_AAAA,
    TYPE_PTR,
    TYPE_SRV,
    TYPE_TXT,
    AddressRecord,
    IPAddress,
    Message,
    PtrRecord,
    Question,
    Record,
    ServiceEntry,
    SrvRecord,
    TxtRecord,
    instance_label,
    join_name,
    normalize_domain,
    normalize_name,
    parse_service,
    subtype_name,
    validate_label,
)
from .scope import Scope
from .transports.multicast import Datagram

logger = logging.getLogger(__name__)

# Longest the task sleeps between TTL sweeps.
SWEEP_POLL_SECONDS = 0.25

_STOP = object()


@dataclass
class _Tracked:
    """Internal, mutable state of one instance seen during a query."""

    instance: str
    fqdn: str
    first_seen: float
    ptr_ttl: int = 0
    ptr_expiry: Optional[float] = None
    host_name: str = ""
    port: int = 0
    srv_ttl: int = 0
    srv_expiry: Optional[float] = None
    text: Optional[List[str]] = None
    addresses: Dict[IPAddress, float] = field(default_factory=dict)
    delivered: bool = False

    @property
    def host_key(self) -> str:
        return normalize_name(self.host_name) if self.host_name else ""

    def complete(self, needs_ptr: bool) -> bool:
        has_ptr = self.ptr_expiry is not None or not needs_ptr
        return has_ptr and self.srv_expiry is not None and bool(self.addresses)

    def expiry(self) -> Optional[float]:
        times = [t for t in (self.ptr_expiry, self.srv_expiry) if t is not None]
        return min(times) if times else None


@dataclass(frozen=True)
class _Query:
    service: str
    domain: str
    subtype: Optional[str] = None
    instance: Optional[str] = None

    def service_name(self) -> str:
        return join_name(self.service, self.domain)

    def pointer_name(self) -> str:
        if self.subtype:
            return subtype_name(self.subtype, self.service, self.domain)
        return self.service_name()

    def instance_name(self) -> Optional[str]:
        if self.instance is None:
            return None
        return join_name(self.instance, self.service, self.domain)

    def describe(self) -> str:
        return self.instance_name() or self.pointer_name()


class QueryTask:
    """
    Brief: Background browse or lookup bound to a Scope.

    Inputs:
      - query: What to look for.
      - config: ResolverConfig (cap, overflow policy, query timing).
      - dispatcher / pool: Shared dispatcher and the pool it is released to.
      - scope: Caller scope; the task ends when it does.
      - entries: Queue receiving ServiceEntry snapshots.

    Outputs:
      - QueryTask instance (returned by Resolver.browse/lookup).
    """

    def __init__(
        self,
        query: _Query,
        config: ResolverConfig,
        dispatcher: Dispatcher,
        pool: TransportPool,
        scope: Scope,
        entries: "queue.Queue",
    ) -> None:
        self.query = query
        self.config = config
        self._dispatcher = dispatcher
        self._pool = pool
        self._scope = scope
        self._entries_out = entries

        self._inbox: "queue.Queue" = queue.Queue(maxsize=config.inbox_size)
        self._lock = threading.Lock()
        self._entries: "OrderedDict[str, _Tracked]" = OrderedDict()
        self._hosts: Dict[str, int] = {}
        self._followups: Optional[TTLCache] = None
        if config.followup_interval > 0:
            self._followups = TTLCache(maxsize=4096, ttl=config.followup_interval)
        self._pointer_key = normalize_name(query.pointer_name())
        lookup_name = query.instance_name()
        self._lookup_key = normalize_name(lookup_name) if lookup_name else None
        self._lookup_done = False
        self._done = threading.Event()
        self.peak_tracked = 0

        self._thread = threading.Thread(
            target=self._run, name=f"lanbuoy-query-{query.describe()}", daemon=True
        )

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def join(self, timeout: Optional[float] = None) -> bool:
        return self._done.wait(timeout)

    def tracked(self) -> List[str]:
        """Instance FQDNs currently tracked (complete or not)."""
        with self._lock:
            return list(self._entries)

    def start(self) -> None:
        self._dispatcher.listeners.subscribe(self.query.service_name(), self)
        self._thread.start()
        self._scope.add_done_callback(self.stop)

    def stop(self) -> None:
        try:
            self._inbox.put_nowait(_STOP)
        except queue.Full:
            pass  # the loop re-checks the scope between packets

    def handle_message(self, message: Message, datagram: Datagram) -> None:
        if not message.is_response:
            return
        try:
            self._inbox.put_nowait(message)
        except queue.Full:
            logger.debug("mDNS query %s: inbox full, dropping packet", self.query.describe())

    # ------------------------------------------------------------------
    # Task loop
    # ------------------------------------------------------------------

    def _run(self) -> None:
        interval = self.config.query_initial_interval
        next_query = time.monotonic()
        try:
            while not self._scope.cancelled:
                now = time.monotonic()
                if now >= next_query and not self._lookup_done:
                    self._send_query(now)
                    next_query = now + interval
                    interval = min(interval * 2, self.config.query_max_interval)
                with self._lock:
                    self._sweep(now)
                self._send_followups(now)

                wait = SWEEP_POLL_SECONDS
                if not self._lookup_done:
                    wait = min(wait, max(0.0, next_query - time.monotonic()))
                try:
                    item = self._inbox.get(timeout=wait)
                except queue.Empty:
                    continue
                if item is _STOP:
                    break
                with self._lock:
                    self._process(item, time.monotonic())
                    self._deliver_complete()
        except Exception:
            logger.exception("mDNS query %s: task failed", self.query.describe())
        finally:
            self._scope.remove_done_callback(self.stop)
            self._dispatcher.listeners.unsubscribe_all(self)
            self._pool.release(self._dispatcher)
            logger.debug("mDNS query %s: stopped", self.query.describe())
            self._done.set()

    # ------------------------------------------------------------------
    # Packet processing (task thread, under self._lock)
    # ------------------------------------------------------------------

    def _process(self, message: Message, now: float) -> None:
        """
        Brief: Apply one response to the tracked entries.

        Inputs:
          - message: Decoded response.
          - now: Monotonic timestamp.

        Outputs:
          - None. PTRs named after the query create entries, SRV/TXT fill
            tracked instances (or the looked-up instance), A/AAAA attach to
            the entries whose SRV target matches.
        """

        records = message.records()
        for r in records:
            if isinstance(r, PtrRecord) and normalize_name(r.name) == self._pointer_key:
                self._on_pointer(r, now)

        for r in records:
            if isinstance(r, (SrvRecord, TxtRecord)):
                self._on_instance_record(r, now)

        for r in records:
            if isinstance(r, AddressRecord):
                self._on_address(r, now)

    def _on_pointer(self, r: PtrRecord, now: float) -> None:
        key = normalize_name(r.target)
        if self._lookup_key is not None and key != self._lookup_key:
            return
        if r.is_goodbye:
            self._remove(key, "goodbye")
            return
        entry = self._entries.get(key)
        if entry is None:
            instance = instance_label(r.target, self.query.service_name())
            if instance is None:
                logger.debug(
                    "mDNS query %s: PTR target %r outside the service",
                    self.query.describe(),
                    r.target,
                )
                return
            entry = self._track(key, instance, now)
        entry.ptr_ttl = r.ttl
        entry.ptr_expiry = now + r.ttl

    def _on_instance_record(self, r: Record, now: float) -> None:
        key = normalize_name(r.name)
        entry = self._entries.get(key)
        if entry is None:
            if key != self._lookup_key or r.is_goodbye:
                return
            entry = self._track(key, str(self.query.instance), now)

        if r.is_goodbye:
            self._remove(key, "goodbye")
            return

        if isinstance(r, SrvRecord):
            target = normalize_name(r.target)
            if entry.host_key and entry.host_key != target:
                self._release_host(entry.host_key)
                entry.addresses.clear()
            if entry.host_key != target:
                self._retain_host(target)
            entry.host_name = r.target
            entry.port = r.port
            entry.srv_ttl = r.ttl
            entry.srv_expiry = now + r.ttl
        elif isinstance(r, TxtRecord):
            entry.text = list(r.text)

    def _on_address(self, r: AddressRecord, now: float) -> None:
        host = normalize_name(r.name)
        for key, entry in list(self._entries.items()):
            if entry.host_key != host:
                continue
            if r.is_goodbye:
                if entry.addresses.pop(r.address, None) is not None and not entry.addresses:
                    self._remove(key, "address goodbye")
                continue
            entry.addresses[r.address] = now + r.ttl

    def _track(self, key: str, instance: str, now: float) -> _Tracked:
        """Start tracking an instance, applying the overflow policy at the cap."""
        if len(self._entries) >= self.config.max_entries:
            if self.config.overflow_policy == "evict_oldest":
                oldest = next(iter(self._entries))
                logger.info(
                    "mDNS query %s: %d entries tracked, evicting %s",
                    self.query.describe(),
                    len(self._entries),
                    oldest,
                )
                self._remove(oldest, "evicted")
            else:
                logger.warning(
                    "mDNS query %s: %d entries tracked, resetting entry map",
                    self.query.describe(),
                    len(self._entries),
                )
                for host in list(self._hosts):
                    self._dispatcher.listeners.unsubscribe(host, self)
                self._hosts.clear()
                self._entries.clear()

        entry = _Tracked(instance=instance, fqdn=key, first_seen=now)
        self._entries[key] = entry
        self.peak_tracked = max(self.peak_tracked, len(self._entries))
        return entry

    def _remove(self, key: str, reason: str) -> None:
        entry = self._entries.pop(key, None)
        if entry is None:
            return
        if entry.host_key:
            self._release_host(entry.host_key)
        logger.debug("mDNS query %s: removed %s (%s)", self.query.describe(), key, reason)

    def _retain_host(self, host: str) -> None:
        count = self._hosts.get(host, 0)
        if count == 0:
            self._dispatcher.listeners.subscribe(host, self)
        self._hosts[host] = count + 1

    def _release_host(self, host: str) -> None:
        count = self._hosts.get(host, 0)
        if count <= 1:
            self._hosts.pop(host, None)
            self._dispatcher.listeners.unsubscribe(host, self)
        else:
            self._hosts[host] = count - 1

    def _sweep(self, now: float) -> None:
        for key, entry in list(self._entries.items()):
            expiry = entry.expiry()
            if expiry is not None and expiry <= now:
                self._remove(key, "expired")
                continue
            stale = [a for a, t in entry.addresses.items() if t <= now]
            for a in stale:
                del entry.addresses[a]
            if stale and not entry.addresses and entry.delivered:
                self._remove(key, "addresses expired")

    def _deliver_complete(self) -> None:
        needs_ptr = self._lookup_key is None
        for entry in self._entries.values():
            if entry.delivered or not entry.complete(needs_ptr):
                continue
            entry.delivered = True
            snapshot = self._snapshot(entry)
            if entry.fqdn == self._lookup_key:
                self._lookup_done = True
            try:
                self._entries_out.put_nowait(snapshot)
            except queue.Full:
                logger.debug(
                    "mDNS query %s: caller queue full, dropping %s",
                    self.query.describe(),
                    entry.fqdn,
                )

    def _snapshot(self, entry: _Tracked) -> ServiceEntry:
        now = time.monotonic()
        expiry = entry.expiry()
        remaining = max(0, int(math.ceil(expiry - now))) if expiry is not None else 0
        return ServiceEntry(
            instance=entry.instance,
            service=self.query.service,
            domain=self.query.domain,
            host_name=entry.host_name,
            port=entry.port,
            text=list(entry.text or []),
            addr_ipv4=[a for a in entry.addresses if a.version == 4],
            addr_ipv6=[a for a in entry.addresses if a.version == 6],
            ttl=remaining,
            expiry=datetime.now(timezone.utc) + timedelta(seconds=remaining),
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _send_query(self, now: float) -> None:
        if self._lookup_key is not None:
            name = str(self.query.instance_name())
            message = Message(
                is_response=False,
                questions=[Question(name, TYPE_SRV), Question(name, TYPE_TXT)],
            )
        else:
            with self._lock:
                known = [
                    PtrRecord(
                        name=self.query.pointer_name(),
                        ttl=max(1, int(math.ceil(e.ptr_expiry - now))),
                        target=e.fqdn,
                    )
                    for e in self._entries.values()
                    if e.delivered
                    and e.ptr_expiry is not None
                    and (e.ptr_expiry - now) * 2 > e.ptr_ttl
                ]
            message = Message(
                is_response=False,
                questions=[Question(self.query.pointer_name(), TYPE_PTR)],
                answers=known,
            )
        self._dispatcher.send(message)

    def _send_followups(self, now: float) -> None:
        address_types = {
            "v4": (TYPE_A,),
            "v6": (TYPE_AAAA,),
        }.get(self.config.ip_version, (TYPE_A, TYPE_AAAA))
        questions: List[Question] = []
        with self._lock:
            for entry in self._entries.values():
                if entry.delivered:
                    continue
                if entry.srv_expiry is None or entry.text is None:
                    if self._due((entry.fqdn, "instance")):
                        questions.append(Question(entry.fqdn, TYPE_SRV))
                        questions.append(Question(entry.fqdn, TYPE_TXT))
                if entry.host_name and not entry.addresses:
                    if self._due((entry.host_key, "address")):
                        questions.extend(Question(entry.host_name, t) for t in address_types)
        if questions:
            self._dispatcher.send(Message(is_response=False, questions=questions))

    def _due(self, key) -> bool:  # type: ignore[no-untyped-def]
        if self._followups is None:
            return True
        if key in self._followups:
            return False
        self._followups[key] = True
        return True


class Resolver:
    """
    Brief: Entry point for browsing and lookups.

    Inputs:
      - config: ResolverConfig; defaults apply when None.
      - pool: TransportPool; defaults to the shared pool.

    Outputs:
      - Resolver instance holding a transport reference until close().

    Raises:
      - TransportError: the multicast transport cannot be opened.

    Example use:
        >>> import queue
        >>> from lanbuoy import Resolver, Scope
        >>> entries = queue.Queue()
        >>> with Resolver() as resolver, Scope(timeout=3) as scope:  # doctest: +SKIP
        ...     resolver.browse(scope, "_http._tcp", "local.", entries)
        ...     scope.wait()
    """

    def __init__(
        self,
        config: Optional[ResolverConfig] = None,
        *,
        pool: Optional[TransportPool] = None,
    ) -> None:
        self.config = config or ResolverConfig()
        self._pool = pool or default_pool()
        self._dispatcher = self._pool.acquire(self.config.interfaces, self.config.ip_version)
        self._lock = threading.Lock()
        self._tasks: List[QueryTask] = []
        self._closed = False

    def browse(
        self, scope: Scope, service: str, domain: str, entries: "queue.Queue"
    ) -> QueryTask:
        """
        Brief: Discover instances of a service type until `scope` ends.

        Inputs:
          - scope: Lifetime of the browse.
          - service: ``_name._tcp`` or ``_name._tcp,subtype`` (only the first
            subtype is used).
          - domain: Usually ``local.``.
          - entries: Queue receiving one ServiceEntry per complete instance.

        Outputs:
          - QueryTask: Handle on the background task; it is already running.

        Raises:
          - InvalidArgumentError: malformed service/domain or missing queue.
          - MdnsError: the resolver is closed.
        """

        base, subtypes = parse_service(service)
        if len(subtypes) > 1:
            logger.debug("mDNS browse: only subtype %r of %r is used", subtypes[0], subtypes)
        query = _Query(
            service=base,
            domain=normalize_domain(domain),
            subtype=subtypes[0] if subtypes else None,
        )
        return self._start(query, scope, entries)

    def lookup(
        self,
        scope: Scope,
        instance: str,
        service: str,
        domain: str,
        entries: "queue.Queue",
    ) -> QueryTask:
        """
        Brief: Resolve one named instance.

        Inputs:
          - scope: Lifetime of the lookup.
          - instance: Instance label.
          - service / domain / entries: As for browse().

        Outputs:
          - QueryTask: Stops querying once the instance has been delivered.

        Raises:
          - InvalidArgumentError / MdnsError: as for browse().
        """

        validate_label(str(instance or ""), what="instance name")
        base, _ = parse_service(service)
        query = _Query(service=base, domain=normalize_domain(domain), instance=str(instance))
        return self._start(query, scope, entries)

    def _start(self, query: _Query, scope: Scope, entries: "queue.Queue") -> QueryTask:
        if scope is None:
            raise InvalidArgumentError("missing scope")
        if entries is None or not hasattr(entries, "put_nowait"):
            raise InvalidArgumentError("entries must be a queue.Queue")
        with self._lock:
            if self._closed:
                raise MdnsError("resolver is closed")
            dispatcher = self._pool.acquire(self.config.interfaces, self.config.ip_version)
            task = QueryTask(query, self.config, dispatcher, self._pool, scope, entries)
            self._tasks = [t for t in self._tasks if not t.done]
            self._tasks.append(task)
        logger.debug("mDNS query %s: started", query.describe())
        task.start()
        return task

    def close(self) -> None:
        """Stop every task started by this resolver and release the transport."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.stop()
        for task in tasks:
            task.join(timeout=1.0)
        self._pool.release(self._dispatcher)

    def __enter__(self) -> "Resolver":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def new_resolver(
    config: Optional[ResolverConfig] = None, *, pool: Optional[TransportPool] = None
) -> Resolver:
    """Build a Resolver; raises TransportError when no socket can be opened."""
    return Resolver(config, pool=pool)

"""Multicast UDP sockets for mDNS on 224.0.0.251 and ff02::fb, port 5353.

Brief:
  `MulticastTransport.open()` binds one socket per address family, joins the
  mDNS group on every selected interface (enumerated with ifaddr) and sends
  per interface. Interfaces whose join fails are skipped; a transport with
  no joined interface raises TransportError.

Outputs:
  - MulticastTransport, Interface and Datagram values
"""

from __future__ import annotations

import errno
import ipaddress
import logging
import select
import socket
import struct
import threading
from dataclasses import dataclass, field
from typing import Iterable, List, NamedTuple, Optional, Sequence, Tuple, Union

import ifaddr

from ..errors import TransportError
from ..records import MDNS_IPV4_GROUP, MDNS_IPV6_GROUP, MDNS_PORT, IPAddress

logger = logging.getLogger(__name__)

# Jumbo-frame sized receive buffer; mDNS allows up to 9000 byte messages.
RECV_SIZE = 9000

_IPPROTO_IPV6 = getattr(socket, "IPPROTO_IPV6", 41)


@dataclass(frozen=True)
class Interface:
    """Brief: A local network interface usable for mDNS.

    Inputs:
      - name: OS interface name (e.g. ``eth0``).
      - index: OS interface index (required for IPv6 multicast).
      - ipv4 / ipv6: Addresses assigned to the interface.
      - ipv4_networks: IPv4 networks, used to attribute inbound packets.

    Outputs:
      - Interface instance.
    """

    name: str
    index: int
    ipv4: Tuple[str, ...] = ()
    ipv6: Tuple[str, ...] = ()
    ipv4_networks: Tuple[ipaddress.IPv4Network, ...] = field(default=(), compare=False)

    @property
    def is_loopback(self) -> bool:
        addrs = [ipaddress.ip_address(a) for a in (*self.ipv4, *self.ipv6)]
        return bool(addrs) and all(a.is_loopback for a in addrs)

    def addresses(self) -> List[IPAddress]:
        return [ipaddress.ip_address(a) for a in (*self.ipv4, *self.ipv6)]

    def owns(self, address: str) -> bool:
        try:
            ip = ipaddress.ip_address(address.split("%", 1)[0])
        except ValueError:
            return False
        if ip.version == 4:
            return any(ip in net for net in self.ipv4_networks) or str(ip) in self.ipv4
        return str(ip) in self.ipv6


class Datagram(NamedTuple):
    data: bytes
    source: Tuple
    interface: Optional[Interface]


def _interface_index(adapter) -> int:  # type: ignore[no-untyped-def]
    idx = getattr(adapter, "index", None)
    if isinstance(idx, int) and idx > 0:
        return idx
    try:
        return socket.if_nametoindex(adapter.name)
    except OSError:
        return 0


def list_interfaces() -> List[Interface]:
    """
    Brief: Enumerate local interfaces with their addresses using ifaddr.

    Inputs:
    - None

    Outputs:
    - list[Interface]: Interfaces that carry at least one address. Host-only
      IPv4 (/32) addresses are ignored.
    """
    out: List[Interface] = []
    for adapter in ifaddr.get_adapters():
        v4: List[str] = []
        v6: List[str] = []
        nets: List[ipaddress.IPv4Network] = []
        for ip in adapter.ips:
            if ip.is_IPv4:
                if ip.network_prefix == 32:
                    continue
                v4.append(str(ip.ip))
                nets.append(
                    ipaddress.ip_network(f"{ip.ip}/{ip.network_prefix}", strict=False)
                )
            elif ip.is_IPv6:
                v6.append(str(ip.ip[0]).split("%", 1)[0])
        if not v4 and not v6:
            continue
        out.append(
            Interface(
                name=str(adapter.name),
                index=_interface_index(adapter),
                ipv4=tuple(v4),
                ipv6=tuple(v6),
                ipv4_networks=tuple(nets),
            )
        )
    return out


def select_interfaces(
    names: Optional[Sequence[Union[str, Interface]]] = None,
    available: Optional[Iterable[Interface]] = None,
) -> List[Interface]:
    """
    Brief: Resolve a caller-supplied interface selection.

    Inputs:
    - names: Interface names or Interface objects; empty/None selects every
      eligible interface (non-loopback, or loopback when nothing else exists).
    - available: Interfaces to choose from (defaults to list_interfaces()).

    Outputs:
    - list[Interface]: Selected interfaces. Unknown names are logged and
      skipped.
    """
    pool = list(available) if available is not None else list_interfaces()
    if not names:
        eligible = [i for i in pool if not i.is_loopback]
        return eligible or pool

    by_name = {i.name: i for i in pool}
    chosen: List[Interface] = []
    for item in names:
        if isinstance(item, Interface):
            chosen.append(item)
            continue
        iface = by_name.get(str(item))
        if iface is None:
            logger.warning("mDNS transport: unknown interface %r ignored", item)
            continue
        chosen.append(iface)
    return chosen


def _new_socket(family: int) -> socket.socket:
    s = socket.socket(family, socket.SOCK_DGRAM)
    try:
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        reuseport = getattr(socket, "SO_REUSEPORT", None)
        if reuseport is not None:
            try:
                s.setsockopt(socket.SOL_SOCKET, reuseport, 1)
            except OSError as err:
                if err.errno != errno.ENOPROTOOPT:
                    raise
        if family == socket.AF_INET:
            s.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, struct.pack("B", 255))
            s.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_LOOP, struct.pack("B", 1))
            s.bind(("", MDNS_PORT))
        else:
            s.setsockopt(_IPPROTO_IPV6, socket.IPV6_V6ONLY, 1)
            s.setsockopt(_IPPROTO_IPV6, socket.IPV6_MULTICAST_HOPS, 255)
            s.setsockopt(_IPPROTO_IPV6, socket.IPV6_MULTICAST_LOOP, 1)
            s.bind(("::", MDNS_PORT))
    except OSError:
        s.close()
        raise
    s.setblocking(False)
    return s


def _join(sock: socket.socket, iface: Interface) -> bool:
    """Join the mDNS group on one interface; False when the OS refuses."""
    try:
        if sock.family == socket.AF_INET:
            value = socket.inet_aton(MDNS_IPV4_GROUP) + socket.inet_aton(iface.ipv4[0])
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, value)
        else:
            value = socket.inet_pton(socket.AF_INET6, MDNS_IPV6_GROUP) + struct.pack(
                "@I", iface.index
            )
            sock.setsockopt(_IPPROTO_IPV6, socket.IPV6_JOIN_GROUP, value)
    except OSError as e:
        if e.errno == errno.EADDRINUSE:
            # Already a member through another socket in this process.
            return True
        logger.info(
            "mDNS transport: cannot join %s group on %s: %s",
            "IPv4" if sock.family == socket.AF_INET else "IPv6",
            iface.name,
            e,
        )
        return False
    return True


class _SocketChannel:
    """Receive side of one multicast socket."""

    def __init__(self, transport: "MulticastTransport", sock: socket.socket) -> None:
        self._transport = transport
        self._sock = sock
        self.family = sock.family

    def __repr__(self) -> str:
        return f"<mDNS channel {'v4' if self.family == socket.AF_INET else 'v6'}>"

    def recv(self, timeout: float) -> Optional[Datagram]:
        """
        Brief: Wait up to `timeout` seconds for one datagram.

        Inputs:
        - timeout: seconds to wait

        Outputs:
        - Optional[Datagram]: None on timeout or once the transport is closed.
        """
        if self._transport.closed:
            return None
        try:
            ready, _, _ = select.select([self._sock], [], [], timeout)
            if not ready:
                return None
            data, source = self._sock.recvfrom(RECV_SIZE)
        except (OSError, ValueError):
            # Closed underneath us or a transient receive error.
            return None
        return Datagram(bytes(data), source, self._transport.interface_for(source))


class MulticastTransport:
    """
    Brief: IPv4/IPv6 mDNS sockets joined on a set of interfaces.

    Inputs:
    - sock_v4 / sock_v6: Bound sockets (either may be None).
    - interfaces_v4 / interfaces_v6: Interfaces joined on each socket.

    Outputs:
    - MulticastTransport instance. Use MulticastTransport.open() to build one.

    Example:
        >>> # transport = MulticastTransport.open(["eth0"], ip_version="v4")
        >>> # transport.send(packet)
    """

    def __init__(
        self,
        sock_v4: Optional[socket.socket],
        sock_v6: Optional[socket.socket],
        interfaces_v4: Sequence[Interface],
        interfaces_v6: Sequence[Interface],
    ) -> None:
        self._sock_v4 = sock_v4
        self._sock_v6 = sock_v6
        self._ifaces_v4 = list(interfaces_v4)
        self._ifaces_v6 = list(interfaces_v6)
        self._send_lock = threading.Lock()
        self.closed = False

    @classmethod
    def open(
        cls,
        interfaces: Optional[Sequence[Union[str, Interface]]] = None,
        ip_version: str = "all",
    ) -> "MulticastTransport":
        """
        Brief: Open and join mDNS sockets.

        Inputs:
        - interfaces: Interface names/objects; None or empty for all eligible.
        - ip_version: "v4", "v6" or "all".

        Outputs:
        - MulticastTransport

        Raises:
        - TransportError: no interface could join the multicast group.
        """
        try:
            selected = select_interfaces(interfaces)
        except OSError as exc:
            raise TransportError(f"cannot enumerate interfaces: {exc}") from exc

        sock_v4 = sock_v6 = None
        joined_v4: List[Interface] = []
        joined_v6: List[Interface] = []

        if ip_version in ("v4", "all"):
            candidates = [i for i in selected if i.ipv4]
            if candidates:
                try:
                    sock_v4 = _new_socket(socket.AF_INET)
                    joined_v4 = [i for i in candidates if _join(sock_v4, i)]
                except OSError as exc:
                    logger.warning("mDNS transport: IPv4 socket setup failed: %s", exc)
                if sock_v4 is not None and not joined_v4:
                    sock_v4.close()
                    sock_v4 = None

        if ip_version in ("v6", "all"):
            candidates = [i for i in selected if i.ipv6 and i.index > 0]
            if candidates:
                try:
                    sock_v6 = _new_socket(socket.AF_INET6)
                    joined_v6 = [i for i in candidates if _join(sock_v6, i)]
                except OSError as exc:
                    logger.warning("mDNS transport: IPv6 socket setup failed: %s", exc)
                if sock_v6 is not None and not joined_v6:
                    sock_v6.close()
                    sock_v6 = None

        if sock_v4 is None and sock_v6 is None:
            raise TransportError(
                "no usable multicast interface "
                f"(requested={list(interfaces or []) or 'all'} ip_version={ip_version})"
            )

        logger.info(
            "mDNS transport: joined v4=%s v6=%s",
            [i.name for i in joined_v4],
            [i.name for i in joined_v6],
        )
        return cls(sock_v4, sock_v6, joined_v4, joined_v6)

    @property
    def interfaces(self) -> List[Interface]:
        seen = {}
        for iface in (*self._ifaces_v4, *self._ifaces_v6):
            seen.setdefault(iface.name, iface)
        return list(seen.values())

    def channels(self) -> List[_SocketChannel]:
        return [_SocketChannel(self, s) for s in (self._sock_v4, self._sock_v6) if s]

    def interface_for(self, source: Tuple) -> Optional[Interface]:
        """Attribute an inbound packet to a joined interface, when possible."""
        if len(source) >= 4 and source[3]:
            for iface in self._ifaces_v6:
                if iface.index == source[3]:
                    return iface
        host = str(source[0])
        for iface in (*self._ifaces_v4, *self._ifaces_v6):
            if iface.owns(host):
                return iface
        if ":" not in host and len(self._ifaces_v4) == 1:
            return self._ifaces_v4[0]
        return None

    def send(self, packet: bytes, interface: Optional[Interface] = None) -> bool:
        """
        Brief: Multicast one packet on one interface or on all joined ones.

        Inputs:
        - packet: Encoded DNS message.
        - interface: Target interface; None sends on every joined interface.

        Outputs:
        - bool: True when at least one send succeeded. Send errors are logged
          and absorbed.
        """
        if self.closed:
            return False
        sent = False
        with self._send_lock:
            for iface in self._ifaces_v4:
                if interface is not None and iface.name != interface.name:
                    continue
                try:
                    self._sock_v4.setsockopt(  # type: ignore[union-attr]
                        socket.IPPROTO_IP,
                        socket.IP_MULTICAST_IF,
                        socket.inet_aton(iface.ipv4[0]),
                    )
                    self._sock_v4.sendto(packet, (MDNS_IPV4_GROUP, MDNS_PORT))  # type: ignore[union-attr]
                    sent = True
                except OSError as exc:
                    logger.debug("mDNS transport: IPv4 send on %s failed: %s", iface.name, exc)
            for iface in self._ifaces_v6:
                if interface is not None and iface.name != interface.name:
                    continue
                try:
                    self._sock_v6.setsockopt(  # type: ignore[union-attr]
                        _IPPROTO_IPV6,
                        socket.IPV6_MULTICAST_IF,
                        struct.pack("@I", iface.index),
                    )
                    self._sock_v6.sendto(  # type: ignore[union-attr]
                        packet, (MDNS_IPV6_GROUP, MDNS_PORT, 0, iface.index)
                    )
                    sent = True
                except OSError as exc:
                    logger.debug("mDNS transport: IPv6 send on %s failed: %s", iface.name, exc)
        return sent

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        for s in (self._sock_v4, self._sock_v6):
            if s is None:
                continue
            try:
                s.close()
            except OSError:  # pragma: no cover - environment-specific
                pass
        logger.debug("mDNS transport: closed")

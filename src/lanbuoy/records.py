"""Record model and wire helpers for mDNS/DNS-SD.

Brief:
  Typed resource records (PTR, SRV, TXT, A/AAAA), questions and decoded
  messages, plus the `ServiceEntry` aggregate handed to browse callers. The
  raw DNS bit layout is handled by dnslib; this module adds name validation,
  lenient per-record decoding and size-bounded message encoding.
"""

from __future__ import annotations

import ipaddress
import logging
import struct
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Iterable, List, Optional, Sequence, Tuple, Union

from dnslib import AAAA, PTR, QTYPE, RR, SRV, TXT, A, DNSHeader, DNSQuestion
from dnslib import DNSRecord as WireMessage
from dnslib.buffer import BufferError as WireBufferError
from dnslib.dns import RD, RDMAP, DNSError
from dnslib.label import DNSBuffer, DNSLabel, DNSLabelError

from .errors import DecodeError, InvalidArgumentError

logger = logging.getLogger(__name__)

MDNS_PORT = 5353
MDNS_IPV4_GROUP = "224.0.0.251"
MDNS_IPV6_GROUP = "ff02::fb"

CLASS_IN = 1
# Top bit of the class field: cache-flush on records, unicast-response on
# questions.
CLASS_TOP_BIT = 0x8000

TYPE_A = int(QTYPE.A)
TYPE_PTR = int(QTYPE.PTR)
TYPE_TXT = int(QTYPE.TXT)
TYPE_AAAA = int(QTYPE.AAAA)
TYPE_SRV = int(QTYPE.SRV)
TYPE_ANY = int(QTYPE.ANY)

# Conservative payload bound: Ethernet MTU minus IPv6 and UDP headers.
MAX_MESSAGE_SIZE = 1460
MAX_LABEL_LENGTH = 63
MAX_NAME_LENGTH = 255
MAX_TXT_STRING_LENGTH = 255

DEFAULT_DOMAIN = "local."
SERVICES_ENUMERATION = "_services._dns-sd._udp"
SERVICE_PROTOCOLS = ("_tcp", "_udp")

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

_ADDRESS_LENGTHS = {TYPE_A: 4, TYPE_AAAA: 16}

_WIRE_ERRORS = (
    DNSError,
    DNSLabelError,
    WireBufferError,
    struct.error,
    ValueError,
    IndexError,
    UnicodeError,
)


# --------------------------------------------------------------------------
# Names
# --------------------------------------------------------------------------


def normalize_name(name: str) -> str:
    """Brief: Canonical form of a DNS name used for comparisons and dict keys.

    Inputs:
      - name: Domain name (any case, optional trailing dot).

    Outputs:
      - str: Lowercased name with exactly one trailing dot.
    """

    s = str(name or "").strip().rstrip(".").lower()
    return s + "."


def join_name(*parts: str) -> str:
    """Join name fragments into an FQDN with a single trailing dot."""
    return ".".join(p.strip(".") for p in parts if p and p.strip(".")) + "."


def validate_label(label: str, what: str = "label") -> str:
    """Brief: Check that a single label fits the DNS wire format.

    Inputs:
      - label: Label text (UTF-8 on the wire).
      - what: Human description used in error messages.

    Outputs:
      - str: The label unchanged.

    Raises:
      - InvalidArgumentError: empty label, label over 63 bytes or containing
        a dot.
    """

    if not label:
        raise InvalidArgumentError(f"empty {what}")
    if "." in label:
        raise InvalidArgumentError(f"{what} {label!r} must not contain '.'")
    if len(label.encode("utf-8")) > MAX_LABEL_LENGTH:
        raise InvalidArgumentError(
            f"{what} {label!r} exceeds {MAX_LABEL_LENGTH} bytes"
        )
    return label


def validate_name(name: str, what: str = "name") -> str:
    """Validate every label of a dotted name and its total length."""
    labels = str(name).rstrip(".").split(".")
    for label in labels:
        validate_label(label, what=f"{what} label")
    if len(name.encode("utf-8")) + 1 > MAX_NAME_LENGTH:
        raise InvalidArgumentError(f"{what} {name!r} exceeds {MAX_NAME_LENGTH} bytes")
    return name


def normalize_domain(domain: str) -> str:
    """Brief: Validate a browse/registration domain.

    Inputs:
      - domain: e.g. ``local.``, ``local`` or ``.local``.

    Outputs:
      - str: Domain with no leading dot and one trailing dot (``local.``).

    Raises:
      - InvalidArgumentError: empty or malformed domain.
    """

    s = str(domain or "").strip().strip(".")
    if not s:
        raise InvalidArgumentError("missing domain")
    validate_name(s, what="domain")
    return s + "."


def parse_service(service: str) -> Tuple[str, List[str]]:
    """Brief: Split a service argument into base type and subtypes.

    Inputs:
      - service: ``_name._tcp`` optionally followed by comma-separated
        subtypes, e.g. ``_http._tcp,_printer``.

    Outputs:
      - (base, subtypes): base type without trailing dot and the list of
        subtype labels.

    Raises:
      - InvalidArgumentError: empty or malformed service type.

    Example:
      - ``"_test._tcp,_fancy"`` -> ``("_test._tcp", ["_fancy"])``
    """

    raw = str(service or "").strip()
    if not raw:
        raise InvalidArgumentError("missing service type")

    parts = raw.split(",")
    base = parts[0].strip().rstrip(".")
    if not base:
        raise InvalidArgumentError("missing service type")

    labels = base.split(".")
    if len(labels) < 2:
        raise InvalidArgumentError(
            f"service type {base!r} must look like _name._tcp or _name._udp"
        )
    for label in labels:
        validate_label(label, what="service label")
        if not label.startswith("_"):
            raise InvalidArgumentError(
                f"service label {label!r} in {base!r} must start with '_'"
            )
    if labels[-1].lower() not in SERVICE_PROTOCOLS:
        raise InvalidArgumentError(
            f"service type {base!r} must end with _tcp or _udp"
        )

    subtypes: List[str] = []
    for part in parts[1:]:
        sub = part.strip()
        if not sub:
            continue
        subtypes.append(validate_label(sub, what="subtype"))
    return base, subtypes


def subtype_name(subtype: str, service: str, domain: str) -> str:
    """Pointer name for a subtype: ``<subtype>._sub.<service>.<domain>``."""
    return join_name(subtype, "_sub", service, domain)


def instance_label(fqdn: str, service_fqdn: str) -> Optional[str]:
    """Brief: Extract the instance label from an instance FQDN.

    Inputs:
      - fqdn: e.g. ``My Printer._ipp._tcp.local.``
      - service_fqdn: e.g. ``_ipp._tcp.local.``

    Outputs:
      - Optional[str]: ``My Printer`` (original case), or None when the name
        is not an instance of the service.
    """

    name = str(fqdn).rstrip(".") + "."
    suffix = "." + normalize_name(service_fqdn)
    if not name.lower().endswith(suffix) or len(name) <= len(suffix):
        return None
    return name[: -len(suffix)]


def to_label(name: str) -> DNSLabel:
    """Build a dnslib label from UTF-8 labels without IDNA re-encoding."""
    labels = [p.encode("utf-8") for p in str(name).rstrip(".").split(".") if p]
    return DNSLabel(labels)


def label_text(label: DNSLabel) -> str:
    """Render a dnslib label as an FQDN string with a trailing dot."""
    parts = [p.decode("utf-8", errors="replace") for p in label.label]
    return ".".join(parts) + "."


# --------------------------------------------------------------------------
# Records
# --------------------------------------------------------------------------


@dataclass(frozen=True)
class Record:
    """Brief: Common fields of a resource record.

    Inputs:
      - name: Owner name (FQDN).
      - ttl: Time to live in seconds; 0 marks a goodbye.

    Outputs:
      - Record instance (use one of the typed subclasses).
    """

    name: str
    ttl: int

    @property
    def rtype(self) -> int:  # pragma: nocover overridden
        raise NotImplementedError

    @property
    def key(self) -> Tuple[str, int]:
        return (normalize_name(self.name), self.rtype)

    @property
    def is_goodbye(self) -> bool:
        return self.ttl == 0

    def data_key(self) -> Tuple:  # pragma: nocover overridden
        raise NotImplementedError

    def rdata(self) -> RD:  # pragma: nocover overridden
        raise NotImplementedError

    def same_data(self, other: "Record") -> bool:
        """True when both records share owner, type and rdata (TTL ignored)."""
        return (
            self.key == other.key
            and type(self) is type(other)
            and self.data_key() == other.data_key()
        )

    def with_ttl(self, ttl: int) -> "Record":
        return replace(self, ttl=int(ttl))

    def to_rr(self) -> RR:
        rclass = CLASS_IN | (CLASS_TOP_BIT if getattr(self, "unique", False) else 0)
        return RR(
            rname=to_label(self.name),
            rtype=self.rtype,
            rclass=rclass,
            ttl=int(self.ttl),
            rdata=self.rdata(),
        )

    def rdata_bytes(self) -> bytes:
        """Uncompressed rdata, used for lexicographic probe tie-breaking."""
        buffer = DNSBuffer()
        self.rdata().pack(buffer)
        return bytes(buffer.data)


@dataclass(frozen=True)
class PtrRecord(Record):
    target: str
    unique: bool = False

    @property
    def rtype(self) -> int:
        return TYPE_PTR

    def data_key(self) -> Tuple:
        return (normalize_name(self.target),)

    def rdata(self) -> RD:
        return PTR(to_label(self.target))


@dataclass(frozen=True)
class SrvRecord(Record):
    port: int
    target: str
    priority: int = 0
    weight: int = 0
    unique: bool = True

    @property
    def rtype(self) -> int:
        return TYPE_SRV

    def data_key(self) -> Tuple:
        return (self.priority, self.weight, self.port, normalize_name(self.target))

    def rdata(self) -> RD:
        return SRV(
            priority=self.priority,
            weight=self.weight,
            port=self.port,
            target=to_label(self.target),
        )


@dataclass(frozen=True)
class TxtRecord(Record):
    text: Tuple[str, ...] = ()
    unique: bool = True

    @property
    def rtype(self) -> int:
        return TYPE_TXT

    def data_key(self) -> Tuple:
        return tuple(self.text)

    def rdata(self) -> RD:
        # An empty TXT record is a single zero-length string on the wire.
        strings = [s.encode("utf-8") for s in self.text] or [b""]
        return TXT(strings)


@dataclass(frozen=True)
class AddressRecord(Record):
    address: IPAddress
    unique: bool = True

    @property
    def rtype(self) -> int:
        return TYPE_A if self.address.version == 4 else TYPE_AAAA

    def data_key(self) -> Tuple:
        return (self.address,)

    def rdata(self) -> RD:
        packed = tuple(self.address.packed)
        return A(packed) if self.address.version == 4 else AAAA(packed)


def record_from_rr(rr: RR) -> Optional[Record]:
    """Brief: Convert a dnslib RR into a typed Record.

    Inputs:
      - rr: Parsed dnslib resource record.

    Outputs:
      - Optional[Record]: Typed record, or None for types mDNS service
        discovery does not use (NSEC, HINFO, OPT, ...).

    Raises:
      - DecodeError: the rdata does not have the expected shape.
    """

    rtype = int(rr.rtype)
    name = label_text(rr.rname)
    ttl = int(rr.ttl)
    unique = bool(int(rr.rclass) & CLASS_TOP_BIT)
    rdata = rr.rdata
    try:
        if rtype == TYPE_PTR:
            return PtrRecord(name=name, ttl=ttl, target=label_text(rdata.label))
        if rtype == TYPE_SRV:
            return SrvRecord(
                name=name,
                ttl=ttl,
                port=int(rdata.port),
                target=label_text(rdata.target),
                priority=int(rdata.priority),
                weight=int(rdata.weight),
                unique=unique,
            )
        if rtype == TYPE_TXT:
            text = tuple(
                bytes(s).decode("utf-8", errors="replace") for s in rdata.data if s
            )
            return TxtRecord(name=name, ttl=ttl, text=text, unique=unique)
        if rtype in (TYPE_A, TYPE_AAAA):
            address = ipaddress.ip_address(bytes(rdata.data))
            expected = 4 if rtype == TYPE_A else 6
            if address.version != expected:
                raise DecodeError(f"address length mismatch for {name}")
            return AddressRecord(name=name, ttl=ttl, address=address, unique=unique)
    except DecodeError:
        raise
    except (AttributeError, TypeError, ValueError) as exc:
        raise DecodeError(f"bad rdata for {name} type {rtype}: {exc}") from exc
    return None


# --------------------------------------------------------------------------
# Messages
# --------------------------------------------------------------------------


@dataclass(frozen=True)
class Question:
    name: str
    qtype: int
    unicast: bool = False

    def to_wire(self) -> DNSQuestion:
        qclass = CLASS_IN | (CLASS_TOP_BIT if self.unicast else 0)
        return DNSQuestion(to_label(self.name), self.qtype, qclass)

    def matches(self, name: str, rtype: int) -> bool:
        if normalize_name(self.name) != normalize_name(name):
            return False
        return self.qtype in (rtype, TYPE_ANY)


@dataclass
class Message:
    """Brief: A decoded (or to-be-encoded) mDNS message.

    Inputs:
      - is_response: True for responses/announcements (QR bit set).
      - questions, answers, authorities, additionals: message sections.
      - id: DNS message id (0 for multicast).

    Outputs:
      - Message instance.
    """

    is_response: bool
    questions: List[Question] = field(default_factory=list)
    answers: List[Record] = field(default_factory=list)
    authorities: List[Record] = field(default_factory=list)
    additionals: List[Record] = field(default_factory=list)
    id: int = 0

    @property
    def is_query(self) -> bool:
        return not self.is_response

    @property
    def is_probe(self) -> bool:
        return self.is_query and bool(self.authorities)

    def records(self) -> List[Record]:
        return [*self.answers, *self.authorities, *self.additionals]

    def names(self) -> List[str]:
        """Every owner name referenced by the message (questions and records)."""
        out = [q.name for q in self.questions]
        out.extend(r.name for r in self.records())
        return out


def decode_message(data: bytes) -> Message:
    """Brief: Parse an mDNS datagram leniently.

    Inputs:
      - data: Raw UDP payload.

    Outputs:
      - Message: Decoded message. Records with undecodable rdata and record
        types outside PTR/SRV/TXT/A/AAAA are skipped; when record framing is
        lost the records decoded so far are kept.

    Raises:
      - DecodeError: the header or a question cannot be parsed.
    """

    buffer = DNSBuffer(bytes(data))
    try:
        header = DNSHeader.parse(buffer)
        questions = []
        for _ in range(header.q):
            q = DNSQuestion.parse(buffer)
            questions.append(
                Question(
                    name=label_text(q.qname),
                    qtype=int(q.qtype),
                    unicast=bool(int(q.qclass) & CLASS_TOP_BIT),
                )
            )
    except _WIRE_ERRORS as exc:
        raise DecodeError(f"malformed mDNS header or question: {exc}") from exc

    sections: List[List[Record]] = [[], [], []]
    framing_ok = True
    for idx, count in enumerate((header.a, header.auth, header.ar)):
        if not framing_ok:
            break
        for _ in range(count):
            try:
                rname = buffer.decode_name()
                rtype, rclass, ttl, rdlength = buffer.unpack("!HHIH")
            except _WIRE_ERRORS as exc:
                logger.debug("mDNS decode: record framing lost: %s", exc)
                framing_ok = False
                break

            start = buffer.offset
            if start + rdlength > len(buffer.data):
                logger.debug("mDNS decode: truncated rdata for %s", rname)
                framing_ok = False
                break
            try:
                expected = _ADDRESS_LENGTHS.get(rtype)
                if expected is not None and rdlength != expected:
                    raise DecodeError(f"address rdata of {rdlength} bytes")
                if rdlength:
                    rd_cls = RDMAP.get(QTYPE.get(rtype), RD)
                    rdata = rd_cls.parse(buffer, rdlength)
                else:
                    rdata = RD(b"")
                rec = record_from_rr(RR(rname, rtype, rclass, ttl, rdata))
            except (DecodeError, *_WIRE_ERRORS) as exc:
                logger.debug(
                    "mDNS decode: skipping %s record for %s: %s",
                    QTYPE.get(rtype),
                    rname,
                    exc,
                )
                rec = None
            buffer.offset = start + rdlength
            if rec is not None:
                sections[idx].append(rec)

    return Message(
        is_response=bool(header.qr),
        questions=questions,
        answers=sections[0],
        authorities=sections[1],
        additionals=sections[2],
        id=int(header.id),
    )


def _pack(
    is_response: bool,
    questions: Sequence[Question],
    answers: Sequence[Record],
    authorities: Sequence[Record],
    additionals: Sequence[Record],
    msg_id: int = 0,
) -> bytes:
    header = DNSHeader(id=msg_id, bitmap=0)
    header.id = msg_id
    header.qr = 1 if is_response else 0
    header.aa = 1 if is_response else 0
    header.rd = 0
    wire = WireMessage(
        header=header,
        questions=[q.to_wire() for q in questions],
        rr=[r.to_rr() for r in answers],
        auth=[r.to_rr() for r in authorities],
        ar=[r.to_rr() for r in additionals],
    )
    return bytes(wire.pack())


def encode_messages(message: Message, max_size: int = MAX_MESSAGE_SIZE) -> List[bytes]:
    """Brief: Pack a message, splitting it when it exceeds the size bound.

    Inputs:
      - message: Message to encode.
      - max_size: Maximum datagram payload in bytes.

    Outputs:
      - list[bytes]: One packed datagram in the common case. When the packed
        size exceeds `max_size`, questions and authorities stay in the first
        datagram and answers/additionals are spread over further ones. A
        single record that alone exceeds the bound is still sent on its own.
    """

    whole = _pack(
        message.is_response,
        message.questions,
        message.answers,
        message.authorities,
        message.additionals,
        message.id,
    )
    if len(whole) <= max_size:
        return [whole]

    out: List[bytes] = []
    questions: List[Question] = list(message.questions)
    authorities: List[Record] = list(message.authorities)
    answers: List[Record] = []
    additionals: List[Record] = []

    def flush() -> None:
        out.append(
            _pack(
                message.is_response,
                questions,
                answers,
                authorities,
                additionals,
                message.id,
            )
        )

    pending = [(True, r) for r in message.answers] + [
        (False, r) for r in message.additionals
    ]
    for is_answer, rec in pending:
        target = answers if is_answer else additionals
        target.append(rec)
        size = len(
            _pack(
                message.is_response,
                questions,
                answers,
                authorities,
                additionals,
                message.id,
            )
        )
        if size > max_size and (len(answers) + len(additionals)) > 1:
            target.pop()
            flush()
            questions, authorities = [], []
            answers, additionals = [], []
            target = answers if is_answer else additionals
            target.append(rec)
    if answers or additionals or questions or authorities:
        flush()
    return out


# --------------------------------------------------------------------------
# Service entries
# --------------------------------------------------------------------------


@dataclass
class ServiceEntry:
    """Brief: A discovered service instance as handed to browse callers.

    Inputs:
      - instance: Instance label (e.g. ``Living Room``).
      - service: Base service type (e.g. ``_http._tcp``).
      - domain: Domain with trailing dot (e.g. ``local.``).
      - host_name: SRV target FQDN.
      - port: SRV port.
      - text: TXT strings in wire order.
      - addr_ipv4 / addr_ipv6: Resolved addresses.
      - ttl: Remaining validity in seconds.
      - expiry: Absolute UTC expiry time.

    Outputs:
      - ServiceEntry instance. Entries delivered to callers are private
        copies; mutating them does not affect the resolver.
    """

    instance: str
    service: str
    domain: str
    host_name: str = ""
    port: int = 0
    text: List[str] = field(default_factory=list)
    addr_ipv4: List[ipaddress.IPv4Address] = field(default_factory=list)
    addr_ipv6: List[ipaddress.IPv6Address] = field(default_factory=list)
    ttl: int = 0
    expiry: Optional[datetime] = None

    def service_name(self) -> str:
        return join_name(self.service, self.domain)

    def service_instance_name(self) -> str:
        return join_name(self.instance, self.service, self.domain)

    def service_type_name(self) -> str:
        return join_name(SERVICES_ENUMERATION, self.domain)

    def to_dict(self) -> dict:
        return {
            "instance": self.instance,
            "service": self.service,
            "domain": self.domain,
            "host_name": self.host_name,
            "port": self.port,
            "text": list(self.text),
            "addr_ipv4": [str(a) for a in self.addr_ipv4],
            "addr_ipv6": [str(a) for a in self.addr_ipv6],
            "ttl": self.ttl,
            "expiry": self.expiry.isoformat() if self.expiry else None,
        }


def parse_addresses(values: Iterable[Union[str, IPAddress]]) -> List[IPAddress]:
    """Parse address strings, raising InvalidArgumentError on bad input."""
    out: List[IPAddress] = []
    for v in values:
        try:
            out.append(ipaddress.ip_address(str(v).split("%", 1)[0]))
        except ValueError as exc:
            raise InvalidArgumentError(f"invalid IP address {v!r}") from exc
    return out

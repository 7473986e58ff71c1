from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, validator

IP_VERSIONS = ("v4", "v6", "all")
OVERFLOW_POLICIES = ("reset", "evict_oldest")


def _normalize_interfaces(v):  # type: ignore[no-untyped-def]
    """Brief: Normalize an interface selection into a list of names.

    Inputs:
      - v: None, "all", a single interface name, or a list of names.

    Outputs:
      - list[str]: Interface names; empty means every eligible interface.
    """

    if v is None:
        return []
    if isinstance(v, str):
        s = v.strip()
        if not s or s.lower() in {"all", "default"}:
            return []
        return [s]
    if isinstance(v, (list, tuple, set)):
        out = []
        for item in v:
            s = str(item or "").strip()
            if s:
                out.append(s)
        return out
    return v


def _normalize_ip_version(v):  # type: ignore[no-untyped-def]
    """Brief: Map ip version spellings (4, ipv4, v4only, both, ...) to v4/v6/all."""

    if v is None:
        return "all"
    s = str(v).strip().lower()
    if s in {"v4", "v4only", "ipv4", "4"}:
        return "v4"
    if s in {"v6", "v6only", "ipv6", "6"}:
        return "v6"
    if s in {"", "all", "both", "dual"}:
        return "all"
    raise ValueError(f"ip_version must be one of {IP_VERSIONS}, got {v!r}")


class ResolverConfig(BaseModel):
    """Brief: Typed configuration for a Resolver.

    Inputs:
      - interfaces: Interface names to use; empty selects every eligible one.
      - ip_version: "v4" | "v6" | "all".
      - max_entries: Hard cap on instances tracked per browse session.
      - overflow_policy: "reset" clears the tracked map when an untracked
        instance would exceed the cap; "evict_oldest" drops the oldest-seen
        entry instead.
      - query_initial_interval / query_max_interval: Bounds (seconds) of the
        exponential backoff between PTR queries.
      - followup_interval: Minimum seconds between follow-up SRV/TXT/A
        queries for the same name.
      - inbox_size: Inbound message queue size per browse task; messages
        beyond it are dropped.

    Outputs:
      - ResolverConfig instance.
    """

    interfaces: List[str] = Field(default_factory=list)
    ip_version: str = Field(default="all")
    max_entries: int = Field(default=100, ge=1)
    overflow_policy: str = Field(default="reset")
    query_initial_interval: float = Field(default=1.0, gt=0)
    query_max_interval: float = Field(default=4.0, gt=0)
    followup_interval: float = Field(default=1.0, ge=0)
    inbox_size: int = Field(default=256, ge=1)

    @validator("interfaces", pre=True)
    def _interfaces(cls, v):  # type: ignore[no-untyped-def]
        return _normalize_interfaces(v)

    @validator("ip_version", pre=True)
    def _ip_version(cls, v):  # type: ignore[no-untyped-def]
        return _normalize_ip_version(v)

    @validator("overflow_policy", pre=True)
    def _overflow_policy(cls, v):  # type: ignore[no-untyped-def]
        s = str(v or "reset").strip().lower().replace("-", "_")
        if s not in OVERFLOW_POLICIES:
            raise ValueError(
                f"overflow_policy must be one of {OVERFLOW_POLICIES}, got {v!r}"
            )
        return s

    @validator("query_max_interval")
    def _max_not_below_initial(cls, v, values):  # type: ignore[no-untyped-def]
        initial = values.get("query_initial_interval")
        if initial is not None and v < initial:
            raise ValueError("query_max_interval must be >= query_initial_interval")
        return v

    class Config:
        extra = "forbid"


class ResponderConfig(BaseModel):
    """Brief: Typed configuration for service registrations.

    Inputs:
      - interfaces / ip_version: As for ResolverConfig.
      - ttl: TTL (seconds) advertised on every record.
      - host_name: Host label or FQDN for the SRV target; defaults to the
        local host name under the registration domain.
      - probe_count / probe_interval: Number of probes and their spacing.
      - announce_count / announce_interval: Number of unsolicited
        announcements and the first gap between them (doubling afterwards).
      - max_conflicts: Renames allowed before NameConflictError.
      - shutdown_timeout: Seconds shutdown() waits for the goodbye.
      - answer_suppression_window: Seconds during which an identical answer
        is not repeated on the same interface (0 disables).

    Outputs:
      - ResponderConfig instance.
    """

    interfaces: List[str] = Field(default_factory=list)
    ip_version: str = Field(default="all")
    ttl: int = Field(default=3200, ge=1)
    host_name: Optional[str] = None
    probe_count: int = Field(default=3, ge=1)
    probe_interval: float = Field(default=0.25, ge=0)
    announce_count: int = Field(default=2, ge=1)
    announce_interval: float = Field(default=1.0, ge=0)
    max_conflicts: int = Field(default=10, ge=0)
    shutdown_timeout: float = Field(default=1.0, ge=0)
    answer_suppression_window: float = Field(default=1.0, ge=0)

    @validator("interfaces", pre=True)
    def _interfaces(cls, v):  # type: ignore[no-untyped-def]
        return _normalize_interfaces(v)

    @validator("ip_version", pre=True)
    def _ip_version(cls, v):  # type: ignore[no-untyped-def]
        return _normalize_ip_version(v)

    @validator("host_name", pre=True)
    def _host_name(cls, v):  # type: ignore[no-untyped-def]
        if v is None:
            return None
        s = str(v).strip().strip(".")
        return s or None

    class Config:
        extra = "forbid"


class Settings(BaseModel):
    """Brief: Top-level configuration file model.

    Inputs:
      - logging: Mapping passed to init_logging().
      - resolver: ResolverConfig fields.
      - responder: ResponderConfig fields.

    Outputs:
      - Settings instance.
    """

    logging: Dict[str, Any] = Field(default_factory=dict)
    resolver: ResolverConfig = Field(default_factory=ResolverConfig)
    responder: ResponderConfig = Field(default_factory=ResponderConfig)

    @validator("logging", "resolver", "responder", pre=True)
    def _none_is_empty(cls, v):  # type: ignore[no-untyped-def]
        return {} if v is None else v

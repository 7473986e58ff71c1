"""lanbuoy: zero-configuration service discovery over multicast DNS."""

from .config.settings import ResolverConfig, ResponderConfig
from .errors import (
    DecodeError,
    InvalidArgumentError,
    InvalidRegistrationError,
    MdnsError,
    NameConflictError,
    RegistrationError,
    TransportError,
)
from .records import ServiceEntry
from .resolver import QueryTask, Resolver, new_resolver
from .responder import RegistrationState, Server, register, register_proxy
from .scope import Scope

__all__ = [
    "DecodeError",
    "InvalidArgumentError",
    "InvalidRegistrationError",
    "MdnsError",
    "NameConflictError",
    "QueryTask",
    "RegistrationError",
    "RegistrationState",
    "Resolver",
    "ResolverConfig",
    "ResponderConfig",
    "Scope",
    "Server",
    "ServiceEntry",
    "TransportError",
    "new_resolver",
    "register",
    "register_proxy",
]

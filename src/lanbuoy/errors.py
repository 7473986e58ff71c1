"""Exception types raised by lanbuoy.

Brief:
  Setup-time failures (bad arguments, socket errors, unresolved naming
  conflicts) are raised synchronously from `register()` and
  `Resolver.browse()`. `DecodeError` is raised by the wire codec and is
  always caught and logged by the dispatch loop.
"""


class MdnsError(Exception):
    """
    Brief: Base class for every lanbuoy error.

    Inputs:
    - message: description

    Outputs:
    - Exception instance
    """

    pass


class InvalidArgumentError(MdnsError, ValueError):
    """
    Brief: Malformed instance, service, domain, port or TXT argument.

    Raised before any network I/O takes place.
    """

    pass


class TransportError(MdnsError, OSError):
    """
    Brief: Multicast socket or interface setup failure.

    Inputs:
    - message: description

    Outputs:
    - Exception instance
    """

    pass


class DecodeError(MdnsError):
    """Malformed inbound DNS data."""

    pass


class RegistrationError(MdnsError):
    """
    Brief: A service registration could not be established.

    Inputs:
    - message: description

    Outputs:
    - Exception instance
    """

    pass


class InvalidRegistrationError(RegistrationError, InvalidArgumentError):
    """Registration arguments cannot be encoded as DNS labels or records."""

    pass


class NameConflictError(RegistrationError):
    """
    Brief: Probing exhausted its renames without finding a free name.

    Inputs:
    - message: description
    - name: last candidate instance name that was tried

    Outputs:
    - Exception instance
    """

    def __init__(self, message: str, name: str = "") -> None:
        super().__init__(message)
        self.name = name

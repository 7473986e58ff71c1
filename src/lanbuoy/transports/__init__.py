from .multicast import Datagram, Interface, MulticastTransport, list_interfaces, select_interfaces

__all__ = ["Datagram", "Interface", "MulticastTransport", "list_interfaces", "select_interfaces"]

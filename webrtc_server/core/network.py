"""
Local network address discovery.
"""

import logging
import socket
from typing import Callable, Dict, Optional

import psutil

logger = logging.getLogger(__name__)


class AddressResolver:
    """Find the IPv4 address other devices on the same WiFi segment can reach.

    The interface table functions default to psutil and can be swapped for
    platform specific enumeration or fakes in tests.
    """

    def __init__(
        self,
        interface_name: str,
        list_addresses: Callable[[], Dict[str, list]] = psutil.net_if_addrs,
        list_stats: Callable[[], Dict[str, object]] = psutil.net_if_stats,
    ):
        self.interface_name = interface_name
        self._list_addresses = list_addresses
        self._list_stats = list_stats

    def resolve_local_address(self) -> Optional[str]:
        """Return the IPv4 address of the WiFi interface, or None if it is down or unaddressed."""
        try:
            addresses = self._list_addresses()
            stats = self._list_stats()
        except (OSError, RuntimeError, psutil.Error) as e:
            logger.warning(f"Could not enumerate network interfaces: {e}")
            return None

        iface_stats = stats.get(self.interface_name)
        if iface_stats is not None and not getattr(iface_stats, "isup", True):
            logger.debug(f"Interface {self.interface_name} is down")
            return None

        for addr in addresses.get(self.interface_name, ()):
            if addr.family == socket.AF_INET and addr.address:
                return addr.address

        logger.debug(f"No IPv4 address on interface {self.interface_name}")
        return None


def build_server_url(host: Optional[str], port: int) -> str:
    """Compose the advertised URL, falling back to localhost."""
    return f"https://{host or 'localhost'}:{port}/"

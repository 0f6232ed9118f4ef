"""Local address discovery used to label pool participants"""

import logging
import socket

logger = logging.getLogger(__name__)

UNKNOWN_ADDRESS = "unknown"


def _pick_address_from_interfaces() -> str:
    # Routing a UDP socket sends no packets but selects the outbound interface
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            s.connect(("10.255.255.255", 1))
            return s.getsockname()[0]
    except OSError as e:
        logger.debug(f"Could not determine outbound interface address: {e}")
        return UNKNOWN_ADDRESS


def get_address() -> str:
    """Best-effort IPv4 address of this host"""
    try:
        return socket.gethostbyname(socket.gethostname())
    except OSError:
        return _pick_address_from_interfaces()

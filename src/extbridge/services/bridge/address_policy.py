"""Classify remote addresses under the configured network policy."""
from __future__ import annotations

import ipaddress
from typing import Final

from .enums import NetworkPolicy

__all__ = ["normalize_address", "is_loopback", "is_address_allowed"]

_LOOPBACK: Final[frozenset[str]] = frozenset({"127.0.0.1", "::1"})

_PRIVATE_V4: Final = tuple(
    ipaddress.IPv4Network(net)
    for net in (
        "10.0.0.0/8",
        "172.16.0.0/12",
        "192.168.0.0/16",
        # carrier-grade NAT range used by the private overlay network
        "100.64.0.0/10",
    )
)
_OVERLAY_V6: Final = ipaddress.IPv6Network("fd7a:115c:a1e0::/48")


def normalize_address(address: str | None) -> str:
    """Strip brackets/zone ids and unwrap IPv4-mapped IPv6 (``::ffff:a.b.c.d``)."""

    text = (address or "").strip()
    if text.startswith("[") and text.endswith("]"):
        text = text[1:-1]
    text = text.split("%", 1)[0]
    try:
        ip = ipaddress.ip_address(text)
    except ValueError:
        return text
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return str(ip.ipv4_mapped)
    return str(ip)


def is_loopback(address: str | None) -> bool:
    return normalize_address(address) in _LOOPBACK


def _is_private(address: str) -> bool:
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return False
    if isinstance(ip, ipaddress.IPv4Address):
        return any(ip in net for net in _PRIVATE_V4)
    return ip in _OVERLAY_V6


def is_address_allowed(address: str | None, policy: NetworkPolicy | str = NetworkPolicy.PRIVATE) -> bool:
    normalized = normalize_address(address)
    if normalized in _LOOPBACK:
        return True
    resolved = NetworkPolicy(policy)
    if resolved is NetworkPolicy.ANY:
        return True
    if resolved is NetworkPolicy.LOOPBACK:
        return False
    return _is_private(normalized)

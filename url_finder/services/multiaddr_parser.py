# url_finder/services/multiaddr_parser.py
"""
Convert multiaddr strings into HTTP base URLs.

Only the textual form is handled (``/ip4/1.2.3.4/tcp/8080/http``). A URL is
produced when the address yields a host, a port and a scheme:

    - host: the last dns / dns4 / dns6 / ip4 / ip6 component
    - port: the first tcp or udp component
    - scheme: an explicit http / https component, or ``http`` inferred
      when a TCP port and host are present without one

Anything else (no port, UDP without a scheme, unknown protocols, malformed
values) is discarded.

Usage:
    from url_finder.services.multiaddr_parser import parse_addresses
    parse_addresses(["/dns/sp.example.com/tcp/443/https"])
    # ['https://sp.example.com:443']
"""

import ipaddress
import logging
from typing import Iterable, List, Optional

logger = logging.getLogger("url_finder.services.multiaddr")

# Protocol name -> number of value segments that follow it
_PROTOCOL_ARITY = {
    "ip4": 1,
    "ip6": 1,
    "ip6zone": 1,
    "dns": 1,
    "dns4": 1,
    "dns6": 1,
    "dnsaddr": 1,
    "tcp": 1,
    "udp": 1,
    "sctp": 1,
    "p2p": 1,
    "ipfs": 1,
    "sni": 1,
    "certhash": 1,
    "http-path": 1,
    "garlic64": 1,
    "garlic32": 1,
    "onion": 1,
    "onion3": 1,
    "http": 0,
    "https": 0,
    "tls": 0,
    "noise": 0,
    "ws": 0,
    "wss": 0,
    "quic": 0,
    "quic-v1": 0,
    "webtransport": 0,
    "webrtc": 0,
    "webrtc-direct": 0,
    "p2p-circuit": 0,
    "utp": 0,
    "udt": 0,
}


def _parse_port(value: str) -> Optional[int]:
    if not value.isdigit():
        return None
    port = int(value)
    return port if 0 <= port <= 65535 else None


def parse_multiaddr(addr: str) -> Optional[str]:
    """Return ``scheme://host:port`` for one multiaddr, or None."""
    if not addr or not addr.startswith("/"):
        logger.debug(f"Failed to parse multiaddr {addr!r}: must start with '/'")
        return None

    parts = addr.strip("/").split("/")
    host: Optional[str] = None
    port: Optional[int] = None
    scheme: Optional[str] = None
    is_tcp = False

    i = 0
    while i < len(parts):
        name = parts[i]
        arity = _PROTOCOL_ARITY.get(name)
        if arity is None:
            logger.debug(f"Failed to parse multiaddr {addr!r}: unknown protocol {name!r}")
            return None
        if arity and i + 1 >= len(parts):
            logger.debug(f"Failed to parse multiaddr {addr!r}: missing value for {name}")
            return None
        value = parts[i + 1] if arity else None
        i += 1 + arity

        if name in ("dns", "dns4", "dns6"):
            if not value:
                return None
            host = value
        elif name == "ip4":
            try:
                host = str(ipaddress.IPv4Address(value))
            except ValueError:
                return None
        elif name == "ip6":
            try:
                host = f"[{ipaddress.IPv6Address(value)}]"
            except ValueError:
                return None
        elif name in ("tcp", "udp"):
            parsed = _parse_port(value)
            if parsed is None:
                return None
            if port is None:
                port = parsed
            if name == "tcp":
                is_tcp = True
        elif name == "http":
            scheme = "http"
        elif name == "https":
            scheme = "https"

    if scheme is None and host is not None and port is not None and is_tcp:
        logger.debug(f"Inferring HTTP for TCP multiaddr without explicit protocol: {host}:{port}")
        scheme = "http"

    if scheme is None or host is None or port is None:
        logger.debug(f"Multiaddr {addr!r} has no usable HTTP endpoint")
        return None
    return f"{scheme}://{host}:{port}"


def parse_addresses(addrs: Iterable[str]) -> List[str]:
    """Convert multiaddrs to unique HTTP base URLs, keeping first-seen order."""
    endpoints: List[str] = []
    seen = set()
    for addr in addrs:
        endpoint = parse_multiaddr(addr)
        if endpoint and endpoint not in seen:
            seen.add(endpoint)
            endpoints.append(endpoint)
    return endpoints

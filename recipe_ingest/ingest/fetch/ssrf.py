"""Server-side request forgery guard: URL screening and resolved-address checks."""
from __future__ import annotations

import asyncio
import ipaddress
import socket
from typing import Awaitable, Callable
from urllib.parse import urlsplit

from recipe_ingest.errors import DnsResolutionError, SsrfBlockedError

Resolver = Callable[[str, int], Awaitable[list[str]]]

BLOCKED_IPV4_NETWORKS = tuple(
    ipaddress.IPv4Network(cidr)
    for cidr in (
        "0.0.0.0/8",
        "10.0.0.0/8",
        "100.64.0.0/10",
        "127.0.0.0/8",
        "169.254.0.0/16",
        "172.16.0.0/12",
        "192.0.0.0/24",
        "192.0.2.0/24",
        "192.168.0.0/16",
        "198.51.100.0/24",
        "203.0.113.0/24",
        "224.0.0.0/4",
        "240.0.0.0/4",
    )
)

BLOCKED_IPV6_NETWORKS = tuple(
    ipaddress.IPv6Network(cidr)
    for cidr in (
        "::1/128",
        "::/128",
        "fe80::/10",
        "fc00::/7",
        "ff00::/8",
    )
)

ALLOWED_SCHEMES = ("http", "https")
LOCAL_HOSTNAMES = ("localhost", "localhost.localdomain", "ip6-localhost", "ip6-loopback")


def is_blocked_address(address: str | ipaddress.IPv4Address | ipaddress.IPv6Address) -> bool:
    try:
        ip = ipaddress.ip_address(address) if isinstance(address, str) else address
    except ValueError:
        return True

    if isinstance(ip, ipaddress.IPv6Address):
        mapped = ip.ipv4_mapped
        if mapped is not None:
            return is_blocked_address(mapped)
        return any(ip in net for net in BLOCKED_IPV6_NETWORKS)

    return any(ip in net for net in BLOCKED_IPV4_NETWORKS)


def validate_url(url: str | None) -> tuple[str, str] | None:
    """Screen a URL before any network access.

    Returns (error_code, message) when the URL must be refused, else None.
    """
    if not url or not url.strip():
        return "EMPTY_URL", "URL cannot be empty"
    try:
        parts = urlsplit(url.strip())
        hostname = parts.hostname
        _ = parts.port
    except ValueError as exc:
        return "INVALID_URL_FORMAT", f"Invalid URL format: {exc}"
    if not parts.scheme or not parts.netloc:
        return "INVALID_URL_FORMAT", "URL must be absolute"
    if parts.scheme.lower() not in ALLOWED_SCHEMES:
        return "INVALID_SCHEME", f"Scheme '{parts.scheme}' is not allowed; only http and https"
    if parts.username or parts.password:
        return "CREDENTIALS_IN_URL", "URLs with embedded credentials are not allowed"
    if not hostname:
        return "INVALID_URL_FORMAT", "URL has no host"
    host = hostname.lower().rstrip(".")
    if host in LOCAL_HOSTNAMES or host.endswith(".localhost"):
        return "LOCAL_RESOURCE", "Local resources cannot be fetched"
    return None


async def default_resolver(host: str, port: int) -> list[str]:
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    seen: list[str] = []
    for info in infos:
        addr = str(info[4][0])
        if addr not in seen:
            seen.append(addr)
    return seen


async def resolve_and_validate(host: str, port: int, resolver: Resolver | None = None) -> list[str]:
    """Resolve host and ensure every address is publicly routable.

    The returned addresses are the only ones the caller may connect to.
    """
    try:
        literal = ipaddress.ip_address(host.strip("[]"))
    except ValueError:
        literal = None

    if literal is not None:
        addresses = [str(literal)]
    else:
        try:
            addresses = await (resolver or default_resolver)(host, port)
        except (OSError, UnicodeError) as exc:
            raise DnsResolutionError(host, str(exc)) from exc
        if not addresses:
            raise DnsResolutionError(host, "no addresses returned")

    for address in addresses:
        if is_blocked_address(address):
            raise SsrfBlockedError(host, address)
    return addresses

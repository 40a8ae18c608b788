"""
URL safety filter.

Decides whether a URL may be fetched at all: http(s) only, no embedded
credentials, no internal hostnames, and every address the host resolves to
must be public. Run it before the first request and again on every redirect
hop.
"""
import ipaddress
import socket
from typing import Callable, Iterable, List
from urllib.parse import urlparse

from app.platform.exceptions import SafetyRejection
from app.platform.logger import get_logger

logger = get_logger(__name__)

ALLOWED_SCHEMES = {"http", "https"}

BLOCKED_HOSTNAMES = {
    "localhost",
    "host.docker.internal",
    "kubernetes.docker.internal",
    "metadata.google.internal",
    "metadata",
}

BLOCKED_SUFFIXES = (".local", ".internal", ".localhost")

METADATA_IPS = {
    ipaddress.ip_address("169.254.169.254"),  # AWS / GCP / Azure
    ipaddress.ip_address("fd00:ec2::254"),  # AWS IPv6
    ipaddress.ip_address("100.100.100.200"),  # Alibaba
}

BLOCKED_NETS = [
    ipaddress.ip_network("0.0.0.0/8"),
    ipaddress.ip_network("100.64.0.0/10"),  # CGNAT
    ipaddress.ip_network("192.0.0.0/24"),
    ipaddress.ip_network("198.18.0.0/15"),  # benchmarking
]

Resolver = Callable[[str], Iterable[str]]


def resolve_all_ips(host: str) -> List[str]:
    infos = socket.getaddrinfo(host, None)
    ips: List[str] = []
    for _family, _type, _proto, _canon, sockaddr in infos:
        ip = sockaddr[0]
        if ip not in ips:
            ips.append(ip)
    return ips


def is_ip_blocked(ip: str) -> bool:
    try:
        addr = ipaddress.ip_address(ip.split("%", 1)[0])
    except ValueError:
        return True

    # IPv4-mapped IPv6 (::ffff:127.0.0.1) is judged as the IPv4 it carries
    if addr.version == 6 and addr.ipv4_mapped is not None:
        addr = addr.ipv4_mapped

    if addr in METADATA_IPS:
        return True
    if (
        addr.is_loopback
        or addr.is_private
        or addr.is_link_local
        or addr.is_multicast
        or addr.is_reserved
        or addr.is_unspecified
    ):
        return True
    if addr.version == 4:
        return any(addr in net for net in BLOCKED_NETS)
    return False


class UrlSafetyFilter:
    """
    Side-effect free predicate apart from the DNS lookup.

    The resolver is injectable so tests (and callers with their own DNS cache)
    do not hit the network.
    """

    def __init__(self, resolver: Resolver = resolve_all_ips):
        self.resolver = resolver

    def check_url(self, url: str) -> str:
        """Return the lower-cased hostname or raise SafetyRejection."""
        try:
            parsed = urlparse(url)
            host = parsed.hostname
            username = parsed.username
            password = parsed.password
        except ValueError:
            raise SafetyRejection("Invalid URL format", url=url)

        if parsed.scheme not in ALLOWED_SCHEMES:
            raise SafetyRejection(
                f"Invalid URL scheme: {parsed.scheme or 'none'} (must be http or https)", url=url
            )
        if not host:
            raise SafetyRejection("Invalid URL format: missing domain", url=url)
        if username or password:
            raise SafetyRejection("URLs with embedded credentials are not allowed", url=url)

        host = host.lower().rstrip(".")
        if host in BLOCKED_HOSTNAMES or host.endswith(BLOCKED_SUFFIXES):
            raise SafetyRejection(f"Blocked hostname: {host}", url=url)

        # Literal IPs skip DNS but get the same address checks
        try:
            ipaddress.ip_address(host.strip("[]"))
            ips = [host.strip("[]")]
        except ValueError:
            try:
                ips = list(self.resolver(host))
            except (OSError, UnicodeError) as e:
                raise SafetyRejection(f"Cannot resolve host {host}: {e}", url=url)

        if not ips:
            raise SafetyRejection(f"Cannot resolve host {host}", url=url)
        for ip in ips:
            if is_ip_blocked(ip):
                raise SafetyRejection(
                    "URL must be publicly accessible. Private networks and local addresses are not allowed.",
                    url=url,
                    resolved_ip=ip,
                )
        return host

    def is_allowed(self, url: str) -> bool:
        try:
            self.check_url(url)
            return True
        except SafetyRejection as e:
            logger.info(f"Rejected unsafe URL {url}: {e.message}")
            return False

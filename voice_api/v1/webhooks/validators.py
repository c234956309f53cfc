import ipaddress
from urllib.parse import urlsplit

_BLOCKED_HOSTNAMES = {"localhost", "localhost.localdomain"}

_BLOCKED_NETWORKS = [
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("169.254.0.0/16"),
    ipaddress.ip_network("0.0.0.0/8"),
    ipaddress.ip_network("::1/128"),
    ipaddress.ip_network("fc00::/7"),
    ipaddress.ip_network("fe80::/10"),
]


def is_https_url(url: str) -> bool:
    parts = urlsplit(url.strip())
    return parts.scheme == "https" and bool(parts.hostname)


def is_private_host(host: str) -> bool:
    """True for localhost and literal loopback, private or link-local addresses."""
    host = host.strip("[]").lower()
    if host in _BLOCKED_HOSTNAMES or host.endswith(".localhost"):
        return True

    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return False

    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped:
        address = address.ipv4_mapped
    return any(address in network for network in _BLOCKED_NETWORKS)


def validate_webhook_url(url: str) -> str:
    """
    Validate a subscriber endpoint before it is stored.

    Only HTTPS targets are accepted and targets pointing at localhost or at
    private address ranges are rejected. Delivery does not re-check.
    """
    if not url or not url.strip():
        raise ValueError("URL is required")

    url = url.strip()
    if any(ch.isspace() or not ch.isprintable() for ch in url):
        raise ValueError("URL must not contain whitespace or control characters")

    if not is_https_url(url):
        raise ValueError("URL must be a valid HTTPS URL (HTTP is not allowed)")

    if is_private_host(urlsplit(url).hostname or ""):
        raise ValueError(
            "URL cannot point to localhost or private IP addresses (SSRF protection)"
        )
    return url

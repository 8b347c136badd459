"""Provider base URL validation.

The provider base URL is operator-supplied and every chat or embedding
request is sent to it with the API key attached, so it must not point into
the private network unless explicitly allowed via environment flags.
"""

from __future__ import annotations

import ipaddress
import re
import socket
from urllib.parse import urlsplit

from papergrid import config
from papergrid.errors import AiBaseUrlValidationError

DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"
MAX_BASE_URL_LENGTH = 2048

BLOCKED_HOSTNAMES = frozenset({"localhost", "host.docker.internal", "gateway.docker.internal"})
BLOCKED_HOST_SUFFIXES = (".local", ".localhost", ".internal", ".lan", ".home")
# Last label of a host the URL standard parses as IPv4 (decimal or 0x-hex)
_NUMERIC_LABEL = re.compile(r"^(0x[0-9a-f]*|[0-9]+)$")

_PRIVATE_IPV4_NETWORKS = [
    ipaddress.ip_network(cidr)
    for cidr in (
        "0.0.0.0/8",
        "10.0.0.0/8",
        "127.0.0.0/8",
        "169.254.0.0/16",
        "172.16.0.0/12",
        "192.168.0.0/16",
        "100.64.0.0/10",
        "198.18.0.0/15",
        "224.0.0.0/3",
    )
]
_PRIVATE_IPV6_NETWORKS = [
    ipaddress.ip_network(cidr) for cidr in ("::1/128", "::/128", "fc00::/7", "fe80::/10")
]


def is_private_ip(ip: ipaddress.IPv4Address | ipaddress.IPv6Address) -> bool:
    if isinstance(ip, ipaddress.IPv6Address):
        if ip.ipv4_mapped is not None:
            return is_private_ip(ip.ipv4_mapped)
        return any(ip in net for net in _PRIVATE_IPV6_NETWORKS)
    return any(ip in net for net in _PRIVATE_IPV4_NETWORKS)


def _assert_safe_scheme(scheme: str, allow_http: bool) -> None:
    if scheme == "https":
        return
    if allow_http and scheme == "http":
        return
    raise AiBaseUrlValidationError(
        "Base URL must use http or https" if allow_http else "Base URL must use https"
    )


def _parse_ipv4_shorthand(host: str) -> ipaddress.IPv4Address:
    """Parse ``127.1``, ``0x7f.0.0.1`` and similar the way the resolver does."""
    try:
        packed = socket.inet_aton(host)
    except OSError as e:
        raise AiBaseUrlValidationError("Base URL has an invalid IPv4 address") from e
    return ipaddress.IPv4Address(packed)


def _assert_safe_hostname(hostname: str, allow_private_host: bool) -> None:
    host = hostname.strip().lower().rstrip(".")
    if not host:
        raise AiBaseUrlValidationError("Base URL is missing a hostname")
    if host in BLOCKED_HOSTNAMES:
        raise AiBaseUrlValidationError("Base URL must not point to a local address")
    if host.endswith(BLOCKED_HOST_SUFFIXES):
        raise AiBaseUrlValidationError("Base URL must not use an internal domain")

    ip: ipaddress.IPv4Address | ipaddress.IPv6Address | None
    if ":" in host:
        try:
            ip = ipaddress.ip_address(host)
        except ValueError as e:
            raise AiBaseUrlValidationError("Base URL has an invalid IPv6 address") from e
    elif _NUMERIC_LABEL.match(host.rsplit(".", 1)[-1]):
        ip = _parse_ipv4_shorthand(host)
    else:
        ip = None

    if ip is None:
        if not allow_private_host and "." not in host:
            raise AiBaseUrlValidationError("Base URL hostname must be a public domain")
        return

    if is_private_ip(ip):
        raise AiBaseUrlValidationError(
            f"Base URL must not use a private IPv{ip.version} address"
        )


def normalize_and_validate_base_url(
    raw: str,
    *,
    allow_empty: bool = False,
    allow_private_host: bool | None = None,
    allow_http: bool | None = None,
) -> str:
    """Validate ``raw`` and return it as ``scheme://host[:port]/path`` without trailing slashes.

    An empty value resolves to the public OpenAI endpoint (or ``""`` when
    ``allow_empty`` is set). Raises AiBaseUrlValidationError on rejection.
    """
    if allow_private_host is None:
        allow_private_host = config.ALLOW_PRIVATE_BASE_URL_HOST
    if allow_http is None:
        allow_http = config.ALLOW_INSECURE_HTTP_BASE_URL

    value = (raw or "").strip()
    if not value:
        return "" if allow_empty else DEFAULT_OPENAI_BASE_URL
    if len(value) > MAX_BASE_URL_LENGTH:
        raise AiBaseUrlValidationError("Base URL is too long")

    try:
        parts = urlsplit(value)
        port = parts.port
    except ValueError as e:
        raise AiBaseUrlValidationError("Base URL is malformed") from e
    if not parts.scheme or not parts.netloc:
        raise AiBaseUrlValidationError("Base URL is malformed")
    if parts.username or parts.password:
        raise AiBaseUrlValidationError("Base URL must not contain credentials")

    scheme = parts.scheme.lower()
    _assert_safe_scheme(scheme, allow_http)
    hostname = (parts.hostname or "").lower()
    _assert_safe_hostname(hostname, allow_private_host)

    host = f"[{hostname}]" if ":" in hostname else hostname
    if port is not None and (scheme, port) not in (("https", 443), ("http", 80)):
        host = f"{host}:{port}"
    path = parts.path.rstrip("/")
    return f"{scheme}://{host}{path}"

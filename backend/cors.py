# backend/cors.py
import ipaddress
from typing import Callable, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlsplit

ALLOW_HEADERS = "authorization, x-client-info, apikey, content-type, x-dev-secret"
ALLOW_METHODS = "POST, OPTIONS"

PRIVATE_NETWORKS = (
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
)
LOOPBACK_HOSTS = {"localhost", "127.0.0.1"}

OriginRule = Callable[[str], bool]


def _split(origin: str) -> Tuple[str, str]:
    try:
        parts = urlsplit(origin)
        hostname = (parts.hostname or "").lower()
    except ValueError:
        return "", ""
    return parts.scheme.lower(), hostname


def static_rule(allowed: Sequence[str]) -> OriginRule:
    allowed_set = set(allowed)
    return lambda origin: origin in allowed_set


def trusted_domain_rule(domain: str) -> OriginRule:
    domain = domain.lower().strip(".")

    def _match(origin: str) -> bool:
        scheme, hostname = _split(origin)
        if scheme != "https" or not hostname or not domain:
            return False
        return hostname == domain or hostname.endswith(f".{domain}")

    return _match


def is_private_network_origin(origin: str) -> bool:
    scheme, hostname = _split(origin)
    if scheme not in ("http", "https") or not hostname:
        return False
    if hostname in LOOPBACK_HOSTS:
        return True
    try:
        address = ipaddress.IPv4Address(hostname)
    except ValueError:
        return False
    return any(address in network for network in PRIVATE_NETWORKS)


class OriginPolicy:
    """Regras de origem avaliadas em ordem; a primeira que casar libera."""

    def __init__(self, allowed_origins: Sequence[str], trusted_domain: str):
        if not allowed_origins:
            raise ValueError("allowed_origins must not be empty")
        self.allowed_origins = list(allowed_origins)
        self.default_origin = self.allowed_origins[0]
        self.rules: List[Tuple[str, OriginRule]] = [
            ("static", static_rule(self.allowed_origins)),
            ("trusted_domain", trusted_domain_rule(trusted_domain)),
            ("private_network", is_private_network_origin),
        ]

    @classmethod
    def from_config(cls, cors_config) -> "OriginPolicy":
        return cls(cors_config.allowed_origins, cors_config.trusted_domain)

    def match(self, origin: Optional[str]) -> Optional[str]:
        if not origin:
            return None
        for name, rule in self.rules:
            if rule(origin):
                return name
        return None

    def is_allowed(self, origin: Optional[str]) -> bool:
        return self.match(origin) is not None

    def headers(self, origin: Optional[str]) -> Dict[str, str]:
        return {
            "Access-Control-Allow-Origin": origin if self.is_allowed(origin) else self.default_origin,
            "Access-Control-Allow-Headers": ALLOW_HEADERS,
            "Access-Control-Allow-Methods": ALLOW_METHODS,
            "Vary": "Origin",
        }

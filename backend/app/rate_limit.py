"""Rate limiting for the Renobid backend.

Read endpoints are limited per client IP. Bidding, bid selection and admin
money movements are limited per authenticated caller, with limits taken
from Settings so a deployment can tighten them without a code change.
"""

import ipaddress
from typing import Optional

from slowapi import Limiter
from slowapi.util import get_remote_address

from .config import get_settings
from .logging_config import get_logger

logger = get_logger("renobid.rate_limit")

PRIVATE_PROXY_CIDRS = (
    "10.0.0.0/8",
    "172.16.0.0/12",
    "192.168.0.0/16",
    "127.0.0.0/8",
    "::1/128",
)

_trusted_networks: Optional[list] = None


def _get_trusted_networks() -> list:
    global _trusted_networks
    if _trusted_networks is None:
        raw = get_settings().trusted_proxy_cidrs
        cidrs = [s.strip() for s in raw.split(",") if s.strip()] or PRIVATE_PROXY_CIDRS
        networks = []
        for cidr in cidrs:
            try:
                networks.append(ipaddress.ip_network(cidr, strict=False))
            except ValueError:
                logger.warning(f"Ignoring invalid trusted proxy CIDR: {cidr}")
        _trusted_networks = networks
    return _trusted_networks


def _is_trusted_proxy(ip_str: str) -> bool:
    try:
        addr = ipaddress.ip_address(ip_str)
    except ValueError:
        return False
    return any(addr in network for network in _get_trusted_networks())


def get_client_ip(request) -> str:
    """Client IP, taking X-Forwarded-For only from a trusted proxy peer."""
    direct_ip = get_remote_address(request)
    if _is_trusted_proxy(direct_ip):
        forwarded = request.headers.get("x-forwarded-for", "").split(",")[0].strip()
        if forwarded:
            return forwarded
    return direct_ip


def get_caller_key(request) -> str:
    """``role:user_id`` once auth has run, otherwise ``ip:<client ip>``.

    ``get_current_user`` stores the caller on ``request.state.auth``; route
    dependencies resolve before slowapi checks the limit.
    """
    auth = getattr(request.state, "auth", None)
    if auth is not None:
        return f"{auth.role}:{auth.user_id}"
    return f"ip:{get_client_ip(request)}"


def bid_limit() -> str:
    return get_settings().bid_rate_limit


def selection_limit() -> str:
    return get_settings().selection_rate_limit


def money_limit() -> str:
    return get_settings().money_rate_limit


def rate_limit_enabled() -> bool:
    return get_settings().rate_limit_enabled


limiter = Limiter(key_func=get_client_ip, enabled=rate_limit_enabled())

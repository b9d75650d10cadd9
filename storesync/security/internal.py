from __future__ import annotations
import hmac
import ipaddress
import logging
from typing import Iterable, Optional

from fastapi import Header, HTTPException, Request

from storesync.security.ratelimit import AuthRateLimiter, get_client_ip

logger = logging.getLogger(__name__)

def ip_in_allowlist(client_ip: str, allowlist: Iterable[str]) -> bool:
    """
    Entries may be single addresses, CIDR networks or plain host names
    ("localhost" means 127.0.0.1). An empty allowlist admits everyone.
    """
    entries = [e.strip() for e in allowlist if e and e.strip()]
    if not entries:
        return True
    entries = ["127.0.0.1" if e.lower() == "localhost" else e for e in entries]

    try:
        addr = ipaddress.ip_address(client_ip)
    except ValueError:
        return client_ip in entries

    for entry in entries:
        try:
            if addr in ipaddress.ip_network(entry, strict=False):
                return True
        except ValueError:
            if entry == client_ip:
                return True
    return False

def api_key_valid(given: Optional[str], expected: str) -> bool:
    # an unset key locks the admin surface rather than opening it
    if not given or not expected:
        return False
    return hmac.compare_digest(given.encode("utf-8"), expected.encode("utf-8"))

async def require_internal(
    request: Request,
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
):
    """
    Guard for the admin surface. Each bad or missing key is a failed login
    for the caller's IP; once blocked, the IP gets 429 before the key is
    even looked at. A good key wipes the IP's failure count.
    """
    cfg = request.app.state.settings
    client_ip = get_client_ip(request)
    logins: AuthRateLimiter = request.app.state.rate_limiters["auth"]
    login_key = f"auth:{client_ip}"

    logins.check(login_key)
    if not api_key_valid(x_api_key, cfg.API_INTERNAL_KEY):
        logins.record_failure(login_key)
        raise HTTPException(status_code=401, detail="missing or invalid X-API-Key")
    logins.record_success(login_key)

    if not ip_in_allowlist(client_ip, cfg.INTERNAL_ALLOWED_IPS or []):
        logger.warning("admin call from address outside allowlist", extra={"client_ip": client_ip})
        raise HTTPException(status_code=403, detail="ip_not_allowed")

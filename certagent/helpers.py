"""
Common utility functions.

Date arithmetic for expiry decisions, SAN construction, and small
filesystem helpers shared by the renewal components.
"""

import ipaddress
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Union


LOOPBACK_DNS = "localhost"
LOOPBACK_IP = "127.0.0.1"

BACKUP_TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def _ensure_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def days_remaining(expires_on: datetime, now: Optional[datetime] = None) -> int:
    """
    Whole days until expiration, floored.

    Negative when the certificate has already expired.
    """
    now = _ensure_aware(now or utcnow())
    return (_ensure_aware(expires_on) - now).days


def is_expiring_soon(
    expires_on: Optional[datetime],
    threshold_days: int,
    now: Optional[datetime] = None,
) -> bool:
    """
    Check if a certificate is due for renewal.

    The threshold is inclusive: a certificate with exactly
    ``threshold_days`` whole days left is due. An unknown expiry is due.
    """
    if expires_on is None:
        return True
    return days_remaining(expires_on, now) <= threshold_days


def format_expiration_status(
    expires_on: Optional[datetime],
    threshold_days: int,
    now: Optional[datetime] = None,
) -> str:
    """
    Format a human-readable expiration status.
    """
    if expires_on is None:
        return "Unknown expiration"

    days = days_remaining(expires_on, now)

    if days < 0:
        return f"EXPIRED ({abs(days)} days ago)"
    elif days == 0:
        return "EXPIRES TODAY"
    elif days <= threshold_days:
        return f"EXPIRING in {days} day{'s' if days != 1 else ''}"
    else:
        return f"Valid ({days} days remaining)"


def is_ip_address(value: str) -> bool:
    """Return True if value parses as an IPv4 or IPv6 address."""
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True


def san_entry(identity: str) -> str:
    """Classify the subject identity as an IP or DNS SAN entry."""
    if is_ip_address(identity):
        return f"IP:{identity}"
    return f"DNS:{identity}"


def build_san_entries(identity: str) -> List[str]:
    """
    Build the SAN list used by every generation backend.

    Always includes localhost and the IPv4 loopback address, followed by the
    subject identity classified as IP or DNS. The identity is not repeated
    when it equals one of the loopback entries.

    Examples:
        >>> build_san_entries("192.168.1.100")
        ['DNS:localhost', 'IP:127.0.0.1', 'IP:192.168.1.100']
        >>> build_san_entries("api.example.com")
        ['DNS:localhost', 'IP:127.0.0.1', 'DNS:api.example.com']
    """
    entries = [f"DNS:{LOOPBACK_DNS}", f"IP:{LOOPBACK_IP}"]
    entry = san_entry(identity)
    if entry not in entries:
        entries.append(entry)
    return entries


def san_values(entries: List[str]) -> List[str]:
    """Strip the IP:/DNS: prefixes from SAN entries."""
    return [entry.split(":", 1)[1] for entry in entries]


def backup_timestamp(when: Optional[datetime] = None) -> str:
    """
    Second-granularity timestamp used as backup suffix.

    Lexical order of the result matches chronological order.
    """
    return _ensure_aware(when or utcnow()).strftime(BACKUP_TIMESTAMP_FORMAT)


def remove_if_exists(path: Union[str, Path]) -> bool:
    """
    Delete a file if it exists.

    Returns:
        True if a file was removed
    """
    try:
        os.remove(path)
    except FileNotFoundError:
        return False
    return True

"""
Identity types for usage gating and client IP extraction.

A fingerprint is a best-effort browser identifier: two devices may share one and one
person may produce many. AnonymousIdentity keeps that weak guarantee visible in the type
so nothing downstream mistakes it for a collision-free key.
"""
from dataclasses import dataclass
from typing import Mapping, Optional, Union

from apptrack.core.errors import ValidationError

UNKNOWN_IP = "unknown"
MAX_FINGERPRINT_LENGTH = 255

# Trusted proxy headers first, then the CDN header
IP_HEADERS = ("x-forwarded-for", "x-real-ip", "cf-connecting-ip")


@dataclass(frozen=True)
class AuthenticatedIdentity:
    user_id: str
    email: Optional[str] = None

    kind = "user"

    @property
    def key(self) -> str:
        return self.user_id


@dataclass(frozen=True)
class AnonymousIdentity:
    fingerprint: str
    ip_address: str = UNKNOWN_IP

    kind = "anon"

    @property
    def key(self) -> str:
        return self.fingerprint


Identity = Union[AuthenticatedIdentity, AnonymousIdentity]


def normalize_fingerprint(fingerprint: Optional[str]) -> str:
    """Accept any opaque non-empty string the client produced."""
    if fingerprint is None or not isinstance(fingerprint, str) or not fingerprint.strip():
        raise ValidationError("Fingerprint is required")
    fingerprint = fingerprint.strip()
    if len(fingerprint) > MAX_FINGERPRINT_LENGTH:
        raise ValidationError("Fingerprint is too long")
    return fingerprint


def get_client_ip(headers: Optional[Mapping[str, str]]) -> str:
    """Extract the client IP from proxy/CDN headers. Never raises."""
    if not headers:
        return UNKNOWN_IP
    try:
        forwarded_for = headers.get("x-forwarded-for")
        if forwarded_for:
            # x-forwarded-for can contain multiple IPs, first one is the client
            first = forwarded_for.split(",")[0].strip()
            if first:
                return first
        for header in IP_HEADERS[1:]:
            value = headers.get(header)
            if value and value.strip():
                return value.strip()
    except (AttributeError, TypeError):
        return UNKNOWN_IP
    return UNKNOWN_IP

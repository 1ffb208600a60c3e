"""Session Token Data Models

Purpose: Define data structures for the application's own session tokens

Key Components:
- TokenPair: Access/refresh token pair minted after a successful login
- parse_utc_timestamp / to_json_compatible: Timestamp (de)serialization helpers
"""

from dataclasses import dataclass
from datetime import datetime, timezone


def parse_utc_timestamp(timestamp_str: str) -> datetime:
    """Parse UTC timestamp string to datetime object"""
    if isinstance(timestamp_str, datetime):
        value = timestamp_str
    else:
        value = datetime.fromisoformat(timestamp_str.replace('Z', '+00:00'))
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def to_json_compatible(value):
    """Convert datetime to JSON-compatible ISO format string"""
    if isinstance(value, datetime):
        return value.isoformat()
    return value


@dataclass(frozen=True)
class TokenPair:
    """Session tokens issued for a user

    Attributes:
        access_token: Signed JWT for API access
        refresh_token: Opaque token for obtaining new access tokens
        access_expires_in: Access token lifetime in seconds
        refresh_expires_in: Refresh token lifetime in seconds
    """
    access_token: str
    refresh_token: str
    access_expires_in: int
    refresh_expires_in: int
    token_type: str = "bearer"

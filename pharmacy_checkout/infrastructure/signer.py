"""Per-request credentials for the STK Push and STK Query APIs."""

import base64
from dataclasses import dataclass
from datetime import datetime

@dataclass(frozen=True)
class SignedRequest:
    password: str
    timestamp: str

def format_timestamp(moment: datetime) -> str:
    """Render ``moment`` as the gateway's fixed-width YYYYMMDDHHMMSS string"""
    return (
        f"{moment.year:04d}{moment.month:02d}{moment.day:02d}"
        f"{moment.hour:02d}{moment.minute:02d}{moment.second:02d}"
    )

def sign(short_code: str, passkey: str, moment: datetime) -> SignedRequest:
    timestamp = format_timestamp(moment)
    raw = f"{short_code}{passkey}{timestamp}".encode("utf-8")
    return SignedRequest(password=base64.b64encode(raw).decode("ascii"), timestamp=timestamp)

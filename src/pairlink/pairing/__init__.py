"""Pairing module for pairlink.

Provides:
- Single-use PIN issuance and validation
- QR code rendering of the pairing payload
"""

from .pin import PairingPin, PinIssuer
from .qr import QrGenerator, build_qr_payload

__all__ = [
    "PairingPin",
    "PinIssuer",
    "QrGenerator",
    "build_qr_payload",
]

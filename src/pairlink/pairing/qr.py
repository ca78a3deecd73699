"""QR code generation for pairing.

The QR code carries a small JSON document telling the mobile app which
device to pair with, the PIN, and where the endpoint listens, so the user
does not have to type anything.
"""

import base64
import io
import json
from typing import Any

import qrcode
from qrcode.main import QRCode

QR_PAYLOAD_TYPE = "pairlink"
QR_PAYLOAD_VERSION = 1


def build_qr_payload(device_id: str, pin: str, endpoint_url: str) -> dict[str, Any]:
    """Build the pairing payload embedded in the QR code."""
    return {
        "type": QR_PAYLOAD_TYPE,
        "version": QR_PAYLOAD_VERSION,
        "deviceId": device_id,
        "pin": pin,
        "endpoint": endpoint_url,
    }


class QrGenerator:
    """Render a pairing payload as a QR code."""

    def __init__(self, payload: dict[str, Any]):
        """Initialize QR generator.

        Args:
            payload: Pairing payload from build_qr_payload().
        """
        self.payload = payload

    def _create_qr(self) -> QRCode:
        qr = qrcode.QRCode(
            version=None,  # Auto-size
            error_correction=qrcode.constants.ERROR_CORRECT_M,
            box_size=10,
            border=4,
        )
        qr.add_data(json.dumps(self.payload, separators=(",", ":")))
        qr.make(fit=True)
        return qr

    def to_terminal(self) -> str:
        """Generate ASCII art for terminal display."""
        qr = self._create_qr()
        output = io.StringIO()
        qr.print_ascii(out=output, invert=True)
        return output.getvalue()

    def to_png(self, path: str) -> None:
        """Save QR code as PNG file."""
        qr = self._create_qr()
        img = qr.make_image(fill_color="black", back_color="white")
        img.save(path)

    def to_html(self) -> str:
        """Generate HTML with embedded QR code and the PIN as fallback text."""
        qr = self._create_qr()
        img = qr.make_image(fill_color="black", back_color="white")

        buffer = io.BytesIO()
        img.save(buffer)
        img_b64 = base64.b64encode(buffer.getvalue()).decode("ascii")

        return f"""<!DOCTYPE html>
<html>
<head>
    <title>pairlink Pairing</title>
    <style>
        body {{
            display: flex;
            flex-direction: column;
            align-items: center;
            justify-content: center;
            height: 100vh;
            margin: 0;
            background: #1a1a1a;
            color: #fff;
            font-family: system-ui, sans-serif;
        }}
        h1 {{ margin-bottom: 20px; }}
        img {{ border: 10px solid white; border-radius: 10px; }}
        p {{ margin-top: 20px; color: #888; }}
        .pin {{ font-size: 2em; letter-spacing: 0.3em; color: #fff; }}
    </style>
</head>
<body>
    <h1>Scan to Pair</h1>
    <img src="data:image/png;base64,{img_b64}" alt="QR Code">
    <p>or enter PIN on {self.payload["deviceId"]}</p>
    <p class="pin">{self.payload["pin"]}</p>
</body>
</html>
"""

"""qr.py — Login challenge payload -> displayable image URI."""

import segno


def render(payload: str, scale: int = 4) -> str:
    """Render a QR payload as a PNG data URI ("data:image/png;base64,...").

    Pure function: same payload, same URI.
    """
    return segno.make_qr(payload, error="m").png_data_uri(scale=scale, border=4)

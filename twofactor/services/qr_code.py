"""QR image references for enrollment.

Rendering is done by an external endpoint; this module only builds the
request URL. Clients that cannot load the image fall back to the raw secret
or otpauth URI.
"""

from urllib.parse import urlencode

from twofactor.core.config import settings


def build_qr_code_url(otpauth_uri: str, size: str | None = None) -> str:
    """Return the image URL that renders ``otpauth_uri`` as a QR code."""
    query = urlencode({"size": size or settings.QR_CODE_SIZE, "data": otpauth_uri})
    return f"{settings.QR_CODE_ENDPOINT}?{query}"

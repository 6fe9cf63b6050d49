from __future__ import annotations

import base64
import binascii
from datetime import UTC, datetime

from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509 import Certificate


def decode_pfx(certificado_a1: str) -> bytes:
    """Decode a base64 A1 certificate as submitted by the front end."""
    try:
        return base64.b64decode(certificado_a1, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("Certificate is not valid base64") from exc


def load_certificate(pfx_data: bytes, password: str | None) -> Certificate:
    """Open a .pfx/.p12 blob and return its end-entity certificate.

    Raises ValueError for a wrong password, a corrupt blob, or a blob
    without certificate/private key.
    """
    secret = password.encode() if password else None
    private_key, certificate, _ = pkcs12.load_key_and_certificates(pfx_data, secret)
    if private_key is None or certificate is None:
        raise ValueError("Certificate or private key not found in .pfx data")
    return certificate


def certificate_info(pfx_data: bytes, password: str | None) -> dict:
    """Validate certificate and return info."""
    certificate = load_certificate(pfx_data, password)
    now = datetime.now(UTC)
    return {
        "subject": certificate.subject.rfc4514_string(),
        "issuer": certificate.issuer.rfc4514_string(),
        "not_before": certificate.not_valid_before_utc,
        "not_after": certificate.not_valid_after_utc,
        "valid": certificate.not_valid_before_utc <= now <= certificate.not_valid_after_utc,
        "serial": certificate.serial_number,
    }

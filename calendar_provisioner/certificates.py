"""Self-signed certificate generation for the automation identity."""
from __future__ import annotations

import base64
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

from .errors import CertificateError


logger = logging.getLogger(__name__)

KEY_SIZE = 2048
VALIDITY_DAYS = 730
MIN_PASSPHRASE_LENGTH = 8


def validate_passphrase(passphrase: Optional[str]) -> str:
    """Reject passphrases shorter than :data:`MIN_PASSPHRASE_LENGTH` characters."""

    if passphrase is None or len(passphrase) < MIN_PASSPHRASE_LENGTH:
        raise CertificateError(
            f"Certificate password must be at least {MIN_PASSPHRASE_LENGTH} characters long."
        )
    return passphrase


def certificate_name_for(display_name: str) -> str:
    """File and artifact name derived from the display name (``Calendar Sync`` -> ``CalendarSync-Cert``)."""

    cleaned = re.sub(r"[^A-Za-z0-9_-]+", "", display_name or "")
    return f"{cleaned or 'Automation'}-Cert"


@dataclass
class IdentityMaterial:
    """A key pair wrapped in a self-signed X.509 certificate."""

    subject: str
    certificate: x509.Certificate
    private_key: rsa.RSAPrivateKey

    @property
    def not_before(self) -> datetime:
        return self.certificate.not_valid_before_utc

    @property
    def not_after(self) -> datetime:
        return self.certificate.not_valid_after_utc

    @property
    def thumbprint(self) -> str:
        return self.certificate.fingerprint(hashes.SHA1()).hex().upper()

    def public_bytes(self) -> bytes:
        return self.certificate.public_bytes(serialization.Encoding.DER)

    def pfx_bytes(self, passphrase: str) -> bytes:
        validate_passphrase(passphrase)
        return pkcs12.serialize_key_and_certificates(
            name=self.subject.encode("utf-8"),
            key=self.private_key,
            cert=self.certificate,
            cas=None,
            encryption_algorithm=serialization.BestAvailableEncryption(passphrase.encode("utf-8")),
        )

    def key_credential(self) -> Dict[str, Any]:
        """Graph ``keyCredential`` payload attaching the public certificate to an application."""

        return {
            "type": "AsymmetricX509Cert",
            "usage": "Verify",
            "key": base64.b64encode(self.public_bytes()).decode("ascii"),
            "displayName": f"CN={self.subject}",
            "startDateTime": self.not_before.strftime("%Y-%m-%dT%H:%M:%SZ"),
            "endDateTime": self.not_after.strftime("%Y-%m-%dT%H:%M:%SZ"),
        }


@dataclass(frozen=True)
class ExportedCertificate:
    name: str
    public_path: Path
    pfx_path: Path
    thumbprint: str


def generate_identity_material(subject: str, now: Optional[datetime] = None) -> IdentityMaterial:
    """Create a 2048-bit RSA key and a SHA-256 self-signed certificate valid for two years."""

    if not subject or not subject.strip():
        raise CertificateError("Certificate subject must not be empty.")
    issued_at = (now or datetime.now(timezone.utc)).replace(microsecond=0)
    try:
        key = rsa.generate_private_key(public_exponent=65537, key_size=KEY_SIZE)
        name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, subject.strip())])
        certificate = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(issued_at)
            .not_valid_after(issued_at + timedelta(days=VALIDITY_DAYS))
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    content_commitment=False,
                    key_encipherment=True,
                    data_encipherment=False,
                    key_agreement=False,
                    key_cert_sign=False,
                    crl_sign=False,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .sign(key, hashes.SHA256())
        )
    except (ValueError, TypeError) as exc:
        raise CertificateError(f"Unable to generate certificate for '{subject}': {exc}") from exc

    logger.info("Generated certificate CN=%s valid until %s", subject, certificate.not_valid_after_utc)
    return IdentityMaterial(subject=subject.strip(), certificate=certificate, private_key=key)


def export_identity_material(
    material: IdentityMaterial, directory: Path, name: str, passphrase: str
) -> ExportedCertificate:
    """Write ``<name>.cer`` (public only) and ``<name>.pfx`` (password protected)."""

    validate_passphrase(passphrase)
    directory = Path(directory)
    public_path = directory / f"{name}.cer"
    pfx_path = directory / f"{name}.pfx"
    try:
        directory.mkdir(parents=True, exist_ok=True)
        public_path.write_bytes(material.public_bytes())
        pfx_path.write_bytes(material.pfx_bytes(passphrase))
    except OSError as exc:
        raise CertificateError(f"Unable to write certificate files to '{directory}': {exc}") from exc

    logger.info("Exported certificate to %s and %s", public_path, pfx_path)
    return ExportedCertificate(
        name=name,
        public_path=public_path,
        pfx_path=pfx_path,
        thumbprint=material.thumbprint,
    )


__all__ = [
    "ExportedCertificate",
    "IdentityMaterial",
    "MIN_PASSPHRASE_LENGTH",
    "VALIDITY_DAYS",
    "certificate_name_for",
    "export_identity_material",
    "generate_identity_material",
    "validate_passphrase",
]

"""Self-signed certificates for secured sites."""
from __future__ import annotations

import ipaddress
import os
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from .errors import PrivilegeError, StorageError

ORGANIZATION = "PHPark Development"
KEY_SIZE = 2048
VALID_DAYS = 365


class CertificateError(StorageError):
    """Raised when certificate material cannot be created or read."""


@dataclass(frozen=True, slots=True)
class CertificatePaths:
    """Certificate and key locations for a site."""

    certificate: Path
    key: Path


@dataclass(frozen=True, slots=True)
class CertificateInfo:
    """Summary of an existing certificate."""

    subject: str
    not_valid_before: datetime
    not_valid_after: datetime
    dns_names: tuple[str, ...]
    matches_key: bool

    def is_expired(self, now: datetime | None = None) -> bool:
        """Return True when the certificate is past its expiry."""
        return self.not_valid_after <= (now or datetime.now(UTC))

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "subject": self.subject,
            "not_valid_before": self.not_valid_before.isoformat(),
            "not_valid_after": self.not_valid_after.isoformat(),
            "dns_names": list(self.dns_names),
            "matches_key": self.matches_key,
        }


class CertificateManager:
    """Create, inspect and delete per-site certificate/key pairs."""

    def __init__(self, cert_dir: Path) -> None:
        """Store certificates under *cert_dir*."""
        self.cert_dir = Path(cert_dir).expanduser()

    def paths_for(self, name: str) -> CertificatePaths:
        """Return the certificate paths for site *name*."""
        return CertificatePaths(
            certificate=self.cert_dir / f"{name}.crt",
            key=self.cert_dir / f"{name}.key",
        )

    def exists(self, name: str) -> bool:
        """Return True only when both the certificate and key exist."""
        paths = self.paths_for(name)
        return paths.certificate.exists() and paths.key.exists()

    def generate(self, name: str, domain: str, *, now: datetime | None = None) -> CertificatePaths:
        """Create a self-signed certificate for ``<name>.<domain>``."""
        server_name = f"{name}.{domain}"
        issued = now or datetime.now(UTC)
        key = rsa.generate_private_key(public_exponent=65537, key_size=KEY_SIZE)
        subject = issuer = x509.Name(
            [
                x509.NameAttribute(NameOID.ORGANIZATION_NAME, ORGANIZATION),
                x509.NameAttribute(NameOID.COMMON_NAME, server_name),
            ]
        )
        certificate = (
            x509.CertificateBuilder()
            .subject_name(subject)
            .issuer_name(issuer)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(issued)
            .not_valid_after(issued + timedelta(days=VALID_DAYS))
            .add_extension(
                x509.SubjectAlternativeName(
                    [
                        x509.DNSName(server_name),
                        x509.DNSName("localhost"),
                        x509.IPAddress(ipaddress.IPv4Address("127.0.0.1")),
                    ]
                ),
                critical=False,
            )
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
            .add_extension(
                x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]),
                critical=False,
            )
            .sign(key, hashes.SHA256())
        )

        paths = self.paths_for(name)
        cert_pem = certificate.public_bytes(serialization.Encoding.PEM)
        key_pem = key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        )
        try:
            self.cert_dir.mkdir(mode=0o755, parents=True, exist_ok=True)
            _write_bytes(paths.key, key_pem, 0o600)
            _write_bytes(paths.certificate, cert_pem, 0o644)
        except PermissionError as exc:
            raise PrivilegeError(f"Cannot write certificate for {server_name}: {exc}") from exc
        except OSError as exc:
            raise CertificateError(f"Cannot write certificate for {server_name}: {exc}") from exc
        return paths

    def remove(self, name: str) -> bool:
        """Delete the certificate and key; return True if anything was removed."""
        removed = False
        paths = self.paths_for(name)
        for path in (paths.certificate, paths.key):
            try:
                path.unlink()
                removed = True
            except FileNotFoundError:
                continue
            except PermissionError as exc:
                raise PrivilegeError(f"Cannot remove {path}: {exc}") from exc
            except OSError as exc:
                raise CertificateError(f"Cannot remove {path}: {exc}") from exc
        return removed

    def inspect(self, name: str) -> CertificateInfo | None:
        """Return details about the certificate of *name*, or None if absent."""
        if not self.exists(name):
            return None
        paths = self.paths_for(name)
        try:
            certificate = _load_certificate(paths.certificate)
            key = serialization.load_pem_private_key(paths.key.read_bytes(), password=None)
        except (OSError, ValueError, TypeError) as exc:
            raise CertificateError(f"Cannot read certificate for {name}: {exc}") from exc

        try:
            san = certificate.extensions.get_extension_for_class(x509.SubjectAlternativeName)
            dns_names = tuple(san.value.get_values_for_type(x509.DNSName))
        except x509.ExtensionNotFound:
            dns_names = ()
        return CertificateInfo(
            subject=certificate.subject.rfc4514_string(),
            not_valid_before=certificate.not_valid_before_utc,
            not_valid_after=certificate.not_valid_after_utc,
            dns_names=dns_names,
            matches_key=_public_keys_match(certificate, key),
        )


def _write_bytes(path: Path, data: bytes, mode: int) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    with os.fdopen(fd, "wb") as handle:
        handle.write(data)
    os.chmod(path, mode)


def _load_certificate(path: Path) -> x509.Certificate:
    data = path.read_bytes()
    try:
        return x509.load_pem_x509_certificate(data)
    except ValueError:
        return x509.load_der_x509_certificate(data)


def _public_keys_match(cert: x509.Certificate, private_key: object) -> bool:
    public_key = getattr(private_key, "public_key", None)
    if public_key is None:
        return False
    cert_bytes = cert.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    key_bytes = public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return cert_bytes == key_bytes


__all__ = [
    "CertificateError",
    "CertificateInfo",
    "CertificateManager",
    "CertificatePaths",
]

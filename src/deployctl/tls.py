"""Inspection of the Let's Encrypt certificate serving a domain."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Protocol, cast

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.x509.oid import NameOID

from .config import TLSConfig


class TLSValidationSeverity(Enum):
    """Overall certificate health."""

    OK = "ok"
    WARNING = "warning"
    ERROR = "error"
    MISSING = "missing"


@dataclass(frozen=True)
class TLSValidationFinding:
    """Individual check outcome."""

    check: str
    severity: TLSValidationSeverity
    message: str


@dataclass(frozen=True)
class CertificateReport:
    """Summary of the certificate installed for a domain."""

    domain: str
    certificate: Path
    key: Path
    subject: str | None
    issuer: str | None
    not_valid_before: datetime | None
    not_valid_after: datetime | None
    days_remaining: int | None
    findings: tuple[TLSValidationFinding, ...]

    @property
    def status(self) -> TLSValidationSeverity:
        """Return the most severe finding."""
        severities = {finding.severity for finding in self.findings}
        for candidate in (
            TLSValidationSeverity.MISSING,
            TLSValidationSeverity.ERROR,
            TLSValidationSeverity.WARNING,
        ):
            if candidate in severities:
                return candidate
        return TLSValidationSeverity.OK

    @property
    def warnings(self) -> list[str]:
        """Return non-OK finding messages."""
        return [f.message for f in self.findings if f.severity is not TLSValidationSeverity.OK]

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation of the report."""
        return {
            "domain": self.domain,
            "status": self.status.value,
            "certificate": str(self.certificate),
            "key": str(self.key),
            "subject": self.subject,
            "issuer": self.issuer,
            "not_valid_before": (
                self.not_valid_before.isoformat() if self.not_valid_before else None
            ),
            "not_valid_after": self.not_valid_after.isoformat() if self.not_valid_after else None,
            "days_remaining": self.days_remaining,
            "findings": [
                {"check": f.check, "severity": f.severity.value, "message": f.message}
                for f in self.findings
            ],
        }


class PublicKeyProtocol(Protocol):
    """Protocol covering public keys exposing ``public_bytes``."""

    def public_bytes(
        self,
        *,
        encoding: serialization.Encoding,
        format: serialization.PublicFormat,
    ) -> bytes:
        """Return the public key bytes in the requested encoding/format."""


class PrivateKeyProtocol(Protocol):
    """Protocol for private keys that can provide a matching public key."""

    def public_key(self) -> PublicKeyProtocol:
        """Return the associated public key object."""


class TLSInspector:
    """Read certificate material from the certbot live directory."""

    def __init__(self, config: TLSConfig) -> None:
        self._config = config

    def paths_for(self, domain: str) -> tuple[Path, Path]:
        """Return ``(fullchain, privkey)`` paths for *domain*."""
        live = self._config.live_dir / domain
        return live / "fullchain.pem", live / "privkey.pem"

    def inspect(self, domain: str, *, now: datetime | None = None) -> CertificateReport:
        """Inspect the certificate for *domain* and classify its expiry."""
        now = now or datetime.now(UTC)
        certificate, key = self.paths_for(domain)
        findings: list[TLSValidationFinding] = []

        if not certificate.exists():
            findings.append(
                TLSValidationFinding(
                    "certificate",
                    TLSValidationSeverity.MISSING,
                    f"No certificate found at {certificate}.",
                )
            )
            return CertificateReport(
                domain, certificate, key, None, None, None, None, None, tuple(findings)
            )

        try:
            cert = _load_certificate(certificate)
        except (OSError, ValueError) as exc:
            findings.append(
                TLSValidationFinding(
                    "parse", TLSValidationSeverity.ERROR, f"Failed to parse certificate: {exc}"
                )
            )
            return CertificateReport(
                domain, certificate, key, None, None, None, None, None, tuple(findings)
            )

        not_before = _as_utc(cert.not_valid_before_utc)
        not_after = _as_utc(cert.not_valid_after_utc)
        days_remaining = (not_after - now).days
        if not_after <= now:
            findings.append(
                TLSValidationFinding(
                    "expiry",
                    TLSValidationSeverity.ERROR,
                    f"Certificate expired on {not_after.isoformat()}",
                )
            )
        elif days_remaining <= self._config.warn_expiry_days:
            findings.append(
                TLSValidationFinding(
                    "expiry",
                    TLSValidationSeverity.WARNING,
                    "Certificate expires soon "
                    f"({not_after.isoformat()}, {days_remaining} day(s) remaining)",
                )
            )
        else:
            findings.append(
                TLSValidationFinding(
                    "expiry",
                    TLSValidationSeverity.OK,
                    f"Certificate valid until {not_after.isoformat()}",
                )
            )

        if key.exists():
            try:
                matches = _public_keys_match(cert, _load_private_key(key))
            except (OSError, ValueError, TypeError) as exc:
                findings.append(
                    TLSValidationFinding(
                        "key", TLSValidationSeverity.WARNING, f"Could not read private key: {exc}"
                    )
                )
            else:
                if matches:
                    findings.append(
                        TLSValidationFinding(
                            "match", TLSValidationSeverity.OK, "Certificate and key match."
                        )
                    )
                else:
                    findings.append(
                        TLSValidationFinding(
                            "match",
                            TLSValidationSeverity.ERROR,
                            "Certificate does not match the private key.",
                        )
                    )

        return CertificateReport(
            domain=domain,
            certificate=certificate,
            key=key,
            subject=_common_name(cert.subject),
            issuer=_common_name(cert.issuer),
            not_valid_before=not_before,
            not_valid_after=not_after,
            days_remaining=days_remaining,
            findings=tuple(findings),
        )


def _common_name(name: x509.Name) -> str:
    attributes = name.get_attributes_for_oid(NameOID.COMMON_NAME)
    if attributes:
        return str(attributes[0].value)
    return name.rfc4514_string()


def _load_certificate(path: Path) -> x509.Certificate:
    data = path.read_bytes()
    try:
        return x509.load_pem_x509_certificate(data)
    except ValueError:
        return x509.load_der_x509_certificate(data)


def _load_private_key(path: Path) -> PrivateKeyProtocol:
    data = path.read_bytes()
    private_key = serialization.load_pem_private_key(data, password=None)
    return cast(PrivateKeyProtocol, private_key)


def _public_keys_match(cert: x509.Certificate, private_key: PrivateKeyProtocol) -> bool:
    cert_bytes = cert.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    key_bytes = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return cert_bytes == key_bytes


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


__all__ = [
    "CertificateReport",
    "TLSInspector",
    "TLSValidationFinding",
    "TLSValidationSeverity",
]

"""
Trust context and certificate path validation.

A signer is trusted only when its certificate chains, through CA
certificates, to one of the configured trust anchors, every certificate on
the path is inside its validity window and, when revocation checking is
enabled, none of them is listed on its issuer's CRL. Anything short of
that is rejected.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Sequence

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes

from .errors import UntrustedSignerError

logger = logging.getLogger(__name__)

MAX_PATH_DEPTH = 8


@dataclass(frozen=True)
class TrustContext:
    """
    Read-only verification policy. Safe to share between verify calls.

    Attributes:
        anchors: Root certificates accepted as authoritative
        intermediates: Extra CA certificates available for path building
        crls: Revocation lists used when check_revocation is set
        check_revocation: Require a valid CRL for every non-anchor certificate
        validation_time: Time to evaluate validity windows at (default: now)
        require_digital_signature: Reject leaves whose KeyUsage lacks
            digitalSignature
    """
    anchors: tuple[x509.Certificate, ...] = ()
    intermediates: tuple[x509.Certificate, ...] = ()
    crls: tuple[x509.CertificateRevocationList, ...] = ()
    check_revocation: bool = False
    validation_time: datetime | None = None
    require_digital_signature: bool = True

    def __post_init__(self) -> None:
        # Accept lists from callers but store tuples.
        object.__setattr__(self, "anchors", tuple(self.anchors))
        object.__setattr__(self, "intermediates", tuple(self.intermediates))
        object.__setattr__(self, "crls", tuple(self.crls))

    def effective_time(self) -> datetime:
        if self.validation_time is None:
            return datetime.now(timezone.utc)
        if self.validation_time.tzinfo is None:
            return self.validation_time.replace(tzinfo=timezone.utc)
        return self.validation_time


def fingerprint(cert: x509.Certificate) -> str:
    """SHA-256 fingerprint as lowercase hex."""
    return cert.fingerprint(hashes.SHA256()).hex()


def subject_identity(cert: x509.Certificate) -> str:
    """Human-readable signer identity (RFC 4514 subject)."""
    return cert.subject.rfc4514_string()


def is_issued_by(cert: x509.Certificate, issuer: x509.Certificate) -> bool:
    """True if ``issuer`` names and cryptographically signed ``cert``."""
    if cert.issuer != issuer.subject:
        return False
    try:
        cert.verify_directly_issued_by(issuer)
    except (ValueError, TypeError, InvalidSignature):
        return False
    return True


def _is_ca(cert: x509.Certificate) -> bool:
    try:
        constraints = cert.extensions.get_extension_for_class(x509.BasicConstraints).value
    except x509.ExtensionNotFound:
        return False
    return constraints.ca


def _issuer_constraint_failure(issuer: x509.Certificate, intermediates_below: int) -> str | None:
    """
    Why ``issuer`` may not sign the next certificate down, or None.

    ``intermediates_below`` counts the CA certificates already on the path
    between the leaf and ``issuer``.
    """
    constraints = issuer.extensions.get_extension_for_class(x509.BasicConstraints).value
    if constraints.path_length is not None and intermediates_below > constraints.path_length:
        return f"path length constraint {constraints.path_length} exceeded"
    try:
        usage = issuer.extensions.get_extension_for_class(x509.KeyUsage).value
    except x509.ExtensionNotFound:
        return None
    if not usage.key_cert_sign:
        return "key usage does not allow certificate signing"
    return None


def _check_validity(cert: x509.Certificate, at: datetime) -> None:
    if at < cert.not_valid_before_utc:
        raise UntrustedSignerError(
            f"Certificate not yet valid: {subject_identity(cert)}",
            details={"not_valid_before": cert.not_valid_before_utc.isoformat()},
        )
    if at > cert.not_valid_after_utc:
        raise UntrustedSignerError(
            f"Certificate expired: {subject_identity(cert)}",
            details={"not_valid_after": cert.not_valid_after_utc.isoformat()},
        )


def _check_key_usage(leaf: x509.Certificate) -> None:
    try:
        usage = leaf.extensions.get_extension_for_class(x509.KeyUsage).value
    except x509.ExtensionNotFound:
        return
    if not usage.digital_signature:
        raise UntrustedSignerError(
            f"Signer certificate is not valid for digital signatures: {subject_identity(leaf)}"
        )


def _check_revocation(
    cert: x509.Certificate,
    issuer: x509.Certificate,
    crls: Sequence[x509.CertificateRevocationList],
    at: datetime,
) -> None:
    """
    Fail closed: a certificate without a usable CRL from its issuer is
    treated as untrusted.
    """
    usable = [
        crl for crl in crls
        if crl.issuer == issuer.subject and crl.is_signature_valid(issuer.public_key())
    ]
    if not usable:
        raise UntrustedSignerError(
            f"No revocation information for {subject_identity(cert)}",
            details={"issuer": subject_identity(issuer)},
        )

    current = [
        crl for crl in usable
        if crl.next_update_utc is None or crl.next_update_utc >= at
    ]
    if not current:
        raise UntrustedSignerError(
            f"Revocation list for {subject_identity(issuer)} is out of date"
        )

    for crl in current:
        revoked = crl.get_revoked_certificate_by_serial_number(cert.serial_number)
        if revoked is not None:
            raise UntrustedSignerError(
                f"Certificate revoked: {subject_identity(cert)}",
                details={
                    "serial_number": format(cert.serial_number, "x"),
                    "revocation_date": revoked.revocation_date_utc.isoformat(),
                },
            )


def build_path(
    leaf: x509.Certificate,
    chain: Sequence[x509.Certificate],
    trust: TrustContext,
) -> list[x509.Certificate]:
    """
    Build a certificate path from ``leaf`` to a trust anchor.

    Args:
        leaf: Signer certificate
        chain: Certificates shipped with the signature (leaf excluded)
        trust: Trust context supplying anchors and extra intermediates

    Returns:
        [leaf, intermediate..., anchor]

    Raises:
        UntrustedSignerError: If no path to an anchor exists
    """
    if not trust.anchors:
        raise UntrustedSignerError("No trust anchors configured")

    anchor_prints = {fingerprint(a) for a in trust.anchors}
    pool = list(chain) + list(trust.intermediates)

    path = [leaf]
    seen = {fingerprint(leaf)}
    current = leaf

    while len(path) <= MAX_PATH_DEPTH:
        if fingerprint(current) in anchor_prints:
            return path

        for anchor in trust.anchors:
            if is_issued_by(current, anchor):
                path.append(anchor)
                return path

        issuer = None
        refused: dict[str, str] = {}
        for candidate in pool:
            if fingerprint(candidate) in seen:
                continue
            if not (_is_ca(candidate) and is_issued_by(current, candidate)):
                continue
            problem = _issuer_constraint_failure(candidate, len(path) - 1)
            if problem is not None:
                refused[subject_identity(candidate)] = problem
                continue
            issuer = candidate
            break

        if issuer is None:
            if refused:
                name, problem = next(iter(refused.items()))
                raise UntrustedSignerError(
                    f"CA certificate cannot issue on this path: {name}: {problem}",
                    details={"refused": refused},
                )
            raise UntrustedSignerError(
                f"Certificate chain does not terminate in a trust anchor: {subject_identity(leaf)}",
                details={"last_issuer": current.issuer.rfc4514_string()},
            )

        seen.add(fingerprint(issuer))
        path.append(issuer)
        current = issuer

    raise UntrustedSignerError(
        f"Certificate chain longer than {MAX_PATH_DEPTH} certificates"
    )


def validate_chain(
    leaf: x509.Certificate,
    chain: Sequence[x509.Certificate],
    trust: TrustContext,
) -> list[x509.Certificate]:
    """
    Validate the signer's certificate path against a trust context.

    Returns:
        The validated path, leaf first, anchor last

    Raises:
        UntrustedSignerError: With the reason the signer is not trusted
    """
    at = trust.effective_time()
    path = build_path(leaf, chain, trust)

    for cert in path:
        _check_validity(cert, at)

    if trust.require_digital_signature:
        _check_key_usage(leaf)

    if trust.check_revocation:
        for cert, issuer in zip(path, path[1:]):
            _check_revocation(cert, issuer, trust.crls, at)

    logger.debug(
        "Validated chain for %s (%d certificates)", subject_identity(leaf), len(path)
    )
    return path

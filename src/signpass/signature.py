"""
Detached signatures over manifest bytes.

The signature blob is a canonical JSON envelope carrying the signer's
certificate chain, the signing time, the digest of the manifest it covers
and the signature itself. The signature is computed over the canonical JSON
of every other envelope field, which binds manifest, chain and time
together:

    {"algorithm":"ecdsa-sha256","certificates":["MIIB..."],
     "format":"signpass-signature","manifest_digest":"sha256:9f86...",
     "signature":"MEUC...","signed_at":"2026-01-01T00:00:00Z","version":1}

Supported algorithms (picked from the private key type):
- rsa-pkcs1v15-sha256
- ecdsa-sha256
- ed25519
"""

import base64
import binascii
import dataclasses
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Sequence

from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, padding, rsa

from .canonical import canonical_bytes
from .digest import DEFAULT_ALGORITHM, ContentDigest, digest_bytes
from .errors import (
    CertificateChainError,
    ErrorCode,
    MalformedBundleError,
    SignatureMismatchError,
    SigningKeyError,
    SignpassError,
)
from .trust import TrustContext, is_issued_by, subject_identity, validate_chain

logger = logging.getLogger(__name__)

SIGNATURE_FORMAT = "signpass-signature"
SIGNATURE_VERSION = 1

ALG_RSA_SHA256 = "rsa-pkcs1v15-sha256"
ALG_ECDSA_SHA256 = "ecdsa-sha256"
ALG_ED25519 = "ed25519"
SUPPORTED_SIGNATURE_ALGORITHMS = (ALG_RSA_SHA256, ALG_ECDSA_SHA256, ALG_ED25519)

_TIME_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def _format_time(when: datetime) -> str:
    return when.astimezone(timezone.utc).strftime(_TIME_FORMAT)


def _parse_time(text: str) -> datetime:
    if not isinstance(text, str):
        raise ValueError(f"signed_at must be a string, got {type(text).__name__}")
    return datetime.strptime(text, _TIME_FORMAT).replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class SignatureBlob:
    """
    Parsed signature envelope. ``certificates`` is leaf first.
    """
    algorithm: str
    manifest_digest: ContentDigest
    certificates: tuple[x509.Certificate, ...]
    signed_at: datetime
    signature: bytes = b""

    @property
    def leaf(self) -> x509.Certificate:
        return self.certificates[0]

    def signed_fields(self, manifest_digest: ContentDigest | None = None) -> dict[str, Any]:
        """Envelope fields covered by the signature."""
        digest = manifest_digest or self.manifest_digest
        return {
            "format": SIGNATURE_FORMAT,
            "version": SIGNATURE_VERSION,
            "algorithm": self.algorithm,
            "manifest_digest": str(digest),
            "signed_at": _format_time(self.signed_at),
            "certificates": [
                base64.b64encode(cert.public_bytes(serialization.Encoding.DER)).decode("ascii")
                for cert in self.certificates
            ],
        }

    def signed_payload(self, manifest_digest: ContentDigest | None = None) -> bytes:
        return canonical_bytes(self.signed_fields(manifest_digest))

    def to_dict(self) -> dict[str, Any]:
        doc = self.signed_fields()
        doc["signature"] = base64.b64encode(self.signature).decode("ascii")
        return doc

    def to_bytes(self) -> bytes:
        return canonical_bytes(self.to_dict())

    @classmethod
    def from_bytes(cls, data: bytes) -> "SignatureBlob":
        """
        Parse a serialized signature envelope.

        Raises:
            MalformedBundleError: If the envelope cannot be read
        """
        try:
            doc = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise MalformedBundleError(f"Signature is not valid JSON: {exc}") from exc

        if not isinstance(doc, dict) or doc.get("format") != SIGNATURE_FORMAT:
            raise MalformedBundleError("Signature is not a signpass signature envelope")
        if doc.get("version") != SIGNATURE_VERSION:
            raise MalformedBundleError(
                f"Unsupported signature version: {doc.get('version')!r}",
                details={"version": doc.get("version"), "supported": [SIGNATURE_VERSION]},
            )

        algorithm = doc.get("algorithm")
        if algorithm not in SUPPORTED_SIGNATURE_ALGORITHMS:
            raise MalformedBundleError(f"Unsupported signature algorithm: {algorithm!r}")

        certs = doc.get("certificates")
        if not isinstance(certs, list) or not certs:
            raise MalformedBundleError("Signature carries no certificates")

        try:
            certificates = tuple(
                x509.load_der_x509_certificate(base64.b64decode(c, validate=True))
                for c in certs
            )
            manifest_digest = ContentDigest.parse(doc["manifest_digest"])
            signed_at = _parse_time(doc["signed_at"])
            signature = base64.b64decode(doc["signature"], validate=True)
        except KeyError as exc:
            raise MalformedBundleError(f"Signature missing field: {exc.args[0]}") from exc
        except (TypeError, ValueError, binascii.Error) as exc:
            raise MalformedBundleError(f"Signature field is invalid: {exc}") from exc

        return cls(
            algorithm=algorithm,
            manifest_digest=manifest_digest,
            certificates=certificates,
            signed_at=signed_at,
            signature=signature,
        )


@dataclass
class SignatureVerification:
    """
    Outcome of checking one signature.
    """
    accepted: bool
    signer_identity: str | None = None
    reason: str | None = None
    code: ErrorCode | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "accepted": self.accepted,
            "signer_identity": self.signer_identity,
            "reason": self.reason,
            "code": self.code.value if self.code else None,
            "details": self.details,
        }


def _public_der(public_key: Any) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def _algorithm_for_key(private_key: Any) -> str:
    if isinstance(private_key, rsa.RSAPrivateKey):
        return ALG_RSA_SHA256
    if isinstance(private_key, ec.EllipticCurvePrivateKey):
        return ALG_ECDSA_SHA256
    if isinstance(private_key, ed25519.Ed25519PrivateKey):
        return ALG_ED25519
    raise SigningKeyError(f"Unsupported private key type: {type(private_key).__name__}")


def _sign_payload(private_key: Any, algorithm: str, payload: bytes) -> bytes:
    if algorithm == ALG_RSA_SHA256:
        return private_key.sign(payload, padding.PKCS1v15(), hashes.SHA256())
    if algorithm == ALG_ECDSA_SHA256:
        return private_key.sign(payload, ec.ECDSA(hashes.SHA256()))
    return private_key.sign(payload)


def _verify_payload(public_key: Any, algorithm: str, signature: bytes, payload: bytes) -> None:
    if algorithm == ALG_RSA_SHA256:
        if not isinstance(public_key, rsa.RSAPublicKey):
            raise ValueError("rsa-pkcs1v15-sha256 requires an RSA signer certificate")
        public_key.verify(signature, payload, padding.PKCS1v15(), hashes.SHA256())
        return
    if algorithm == ALG_ECDSA_SHA256:
        if not isinstance(public_key, ec.EllipticCurvePublicKey):
            raise ValueError("ecdsa-sha256 requires an EC signer certificate")
        public_key.verify(signature, payload, ec.ECDSA(hashes.SHA256()))
        return
    if algorithm == ALG_ED25519:
        if not isinstance(public_key, ed25519.Ed25519PublicKey):
            raise ValueError("ed25519 requires an Ed25519 signer certificate")
        public_key.verify(signature, payload)
        return
    raise ValueError(f"Unsupported signature algorithm: {algorithm}")


def sign_manifest(
    manifest_bytes: bytes,
    private_key: Any,
    cert_chain: Sequence[x509.Certificate],
    signed_at: datetime | None = None,
    digest_algorithm: str = DEFAULT_ALGORITHM,
) -> SignatureBlob:
    """
    Produce a detached signature over manifest bytes.

    Args:
        manifest_bytes: Serialized manifest, exactly as it will be written
        private_key: RSA, EC or Ed25519 private key
        cert_chain: Signer certificate first, then its issuers in order
        signed_at: Signing time (default: now), stored to the second
        digest_algorithm: Algorithm for the embedded manifest digest

    Returns:
        SignatureBlob

    Raises:
        SigningKeyError: If the key type is unsupported or the key does not
            match the signer certificate
        CertificateChainError: If the chain is empty or not a valid
            issuer sequence starting at the signer certificate
    """
    chain = tuple(cert_chain)
    if not chain:
        raise CertificateChainError("Certificate chain is empty")

    leaf = chain[0]
    algorithm = _algorithm_for_key(private_key)

    if _public_der(private_key.public_key()) != _public_der(leaf.public_key()):
        raise SigningKeyError(
            "Private key does not match the signer certificate",
            details={"subject": subject_identity(leaf)},
        )

    for position, (cert, issuer) in enumerate(zip(chain, chain[1:])):
        if not is_issued_by(cert, issuer):
            raise CertificateChainError(
                f"Certificate {position} is not issued by certificate {position + 1}",
                details={
                    "subject": subject_identity(cert),
                    "expected_issuer": cert.issuer.rfc4514_string(),
                    "found": subject_identity(issuer),
                },
            )

    when = signed_at or datetime.now(timezone.utc)
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    when = when.astimezone(timezone.utc).replace(microsecond=0)

    unsigned = SignatureBlob(
        algorithm=algorithm,
        manifest_digest=digest_bytes(manifest_bytes, digest_algorithm),
        certificates=chain,
        signed_at=when,
    )
    signature = _sign_payload(private_key, algorithm, unsigned.signed_payload())
    logger.debug("Signed manifest as %s using %s", subject_identity(leaf), algorithm)
    return dataclasses.replace(unsigned, signature=signature)


def check_signature(manifest_bytes: bytes, blob: SignatureBlob) -> None:
    """
    Confirm the signature covers exactly ``manifest_bytes``.

    Raises:
        SignatureMismatchError: If the manifest differs from the signed one
            or the signature does not verify with the signer's key
    """
    actual = digest_bytes(manifest_bytes, blob.manifest_digest.algorithm)
    if not actual.matches(blob.manifest_digest):
        raise SignatureMismatchError(
            "Signature was computed over a different manifest",
            details={"expected": str(blob.manifest_digest), "actual": str(actual)},
        )

    try:
        _verify_payload(
            blob.leaf.public_key(),
            blob.algorithm,
            blob.signature,
            blob.signed_payload(manifest_digest=actual),
        )
    except InvalidSignature:
        raise SignatureMismatchError("Signature does not verify against the signer certificate")
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise SignatureMismatchError(f"Signature cannot be checked: {exc}") from exc


def verify_signature(
    manifest_bytes: bytes,
    blob: SignatureBlob | bytes,
    trust: TrustContext,
) -> SignatureVerification:
    """
    Check a signature blob against manifest bytes and a trust context.

    The signature is checked before the chain, so a byte-different manifest
    always reports SIGNATURE_MISMATCH rather than a trust problem.

    Returns:
        SignatureVerification; never raises for signpass errors
    """
    try:
        if isinstance(blob, (bytes, bytearray)):
            blob = SignatureBlob.from_bytes(bytes(blob))
        check_signature(manifest_bytes, blob)
        path = validate_chain(blob.leaf, blob.certificates[1:], trust)
    except SignpassError as exc:
        logger.info("Signature rejected (%s): %s", exc.code.value, exc.message)
        return SignatureVerification(
            accepted=False,
            reason=exc.message,
            code=exc.code,
            details=dict(exc.details),
        )

    return SignatureVerification(
        accepted=True,
        signer_identity=subject_identity(blob.leaf),
        details={
            "algorithm": blob.algorithm,
            "signed_at": _format_time(blob.signed_at),
            "path": [subject_identity(cert) for cert in path],
        },
    )

"""
Credential and trust-anchor providers backed by PEM files.

The engine never looks up keys or certificates itself; callers hand it
Credentials for signing and a TrustContext for verification. These
providers cover the common case of PEM files on disk.
"""

import abc
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Sequence

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from .errors import CertificateChainError, SigningKeyError
from .trust import TrustContext


@dataclass(frozen=True)
class Credentials:
    """Private key plus certificate chain (signer certificate first)."""
    private_key: Any
    certificate_chain: tuple[x509.Certificate, ...]


class CredentialProvider(abc.ABC):
    """Source of signing credentials."""

    @abc.abstractmethod
    def load(self, identifier: str) -> Credentials:
        """Return the credentials registered under ``identifier``."""


class TrustAnchorProvider(abc.ABC):
    """Source of trusted root certificates."""

    @abc.abstractmethod
    def anchors(self) -> Sequence[x509.Certificate]:
        """Return the trusted root certificates."""


def load_certificates(path: Path) -> list[x509.Certificate]:
    """
    Load every certificate from a PEM file.

    Raises:
        CertificateChainError: If the file holds no readable certificate
    """
    try:
        certs = x509.load_pem_x509_certificates(Path(path).read_bytes())
    except ValueError as exc:
        raise CertificateChainError(f"Cannot read certificates from {path}: {exc}") from exc
    return certs


def load_crls(path: Path) -> list[x509.CertificateRevocationList]:
    """Load a CRL from a PEM or DER file."""
    data = Path(path).read_bytes()
    try:
        if b"-----BEGIN" in data:
            return [x509.load_pem_x509_crl(data)]
        return [x509.load_der_x509_crl(data)]
    except ValueError as exc:
        raise CertificateChainError(f"Cannot read revocation list from {path}: {exc}") from exc


def load_private_key(path: Path, password: str | None = None) -> Any:
    """
    Load a PEM private key.

    Raises:
        SigningKeyError: If the key cannot be decoded or the password is wrong
    """
    data = Path(path).read_bytes()
    try:
        return serialization.load_pem_private_key(
            data, password=password.encode("utf-8") if password else None
        )
    except (ValueError, TypeError) as exc:
        raise SigningKeyError(f"Cannot load private key from {path}: {exc}") from exc


def load_credentials(
    key_path: Path,
    chain_path: Path,
    password: str | None = None,
) -> Credentials:
    """Load a key and its certificate chain from PEM files."""
    chain = load_certificates(chain_path)
    return Credentials(
        private_key=load_private_key(key_path, password),
        certificate_chain=tuple(chain),
    )


def load_trust_context(
    anchor_paths: Iterable[Path],
    intermediate_paths: Iterable[Path] = (),
    crl_paths: Iterable[Path] = (),
    check_revocation: bool = False,
) -> TrustContext:
    """Build a TrustContext from PEM files."""
    anchors = PemTrustStore(anchor_paths).anchors()
    intermediates = [c for p in intermediate_paths for c in load_certificates(p)]
    crls = [crl for p in crl_paths for crl in load_crls(p)]
    return TrustContext(
        anchors=tuple(anchors),
        intermediates=tuple(intermediates),
        crls=tuple(crls),
        check_revocation=check_revocation,
    )


class PemCredentialProvider(CredentialProvider):
    """
    Credentials stored as ``<identifier>.key.pem`` and
    ``<identifier>.chain.pem`` in one directory.
    """

    def __init__(self, directory: Path, password: str | None = None) -> None:
        self.directory = Path(directory)
        self._password = password

    def load(self, identifier: str) -> Credentials:
        if not identifier or "/" in identifier or "\\" in identifier or identifier.startswith("."):
            raise SigningKeyError(f"Invalid credential identifier: {identifier!r}")
        key_path = self.directory / f"{identifier}.key.pem"
        chain_path = self.directory / f"{identifier}.chain.pem"
        if not key_path.exists():
            raise SigningKeyError(f"No private key for {identifier} in {self.directory}")
        if not chain_path.exists():
            raise CertificateChainError(f"No certificate chain for {identifier} in {self.directory}")
        return load_credentials(key_path, chain_path, self._password)


class PemTrustStore(TrustAnchorProvider):
    """Trust anchors read from one or more PEM bundles."""

    def __init__(self, paths: Iterable[Path]) -> None:
        self.paths = [Path(p) for p in paths]

    def anchors(self) -> list[x509.Certificate]:
        return [cert for path in self.paths for cert in load_certificates(path)]

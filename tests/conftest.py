"""Shared fixtures: a throw-away PKI and sample bundle sources."""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

# Add parent src to path for development
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from signpass import Credentials, TrustContext  # noqa: E402


def _name(common_name: str) -> x509.Name:
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])


def make_certificate(
    subject: str,
    key,
    issuer: str,
    issuer_key,
    ca: bool = False,
    not_before: datetime | None = None,
    not_after: datetime | None = None,
    key_usage: x509.KeyUsage | None = None,
    path_length: int | None = None,
) -> x509.Certificate:
    now = datetime.now(timezone.utc)
    builder = (
        x509.CertificateBuilder()
        .subject_name(_name(subject))
        .issuer_name(_name(issuer))
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before or now - timedelta(days=1))
        .not_valid_after(not_after or now + timedelta(days=30))
        .add_extension(x509.BasicConstraints(ca=ca, path_length=path_length if ca else None), critical=True)
    )
    if key_usage is not None:
        builder = builder.add_extension(key_usage, critical=True)
    return builder.sign(issuer_key, hashes.SHA256())


def make_crl(issuer_cert: x509.Certificate, issuer_key, revoked_serials=()) -> x509.CertificateRevocationList:
    now = datetime.now(timezone.utc)
    builder = (
        x509.CertificateRevocationListBuilder()
        .issuer_name(issuer_cert.subject)
        .last_update(now - timedelta(hours=1))
        .next_update(now + timedelta(days=1))
    )
    for serial in revoked_serials:
        builder = builder.add_revoked_certificate(
            x509.RevokedCertificateBuilder()
            .serial_number(serial)
            .revocation_date(now - timedelta(minutes=5))
            .build()
        )
    return builder.sign(issuer_key, hashes.SHA256())


def _ec_key():
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture(scope="session")
def pki():
    """Root CA -> intermediate CA -> signer, plus an unrelated root."""
    root_key = _ec_key()
    root = make_certificate("Test Root CA", root_key, "Test Root CA", root_key, ca=True)

    inter_key = _ec_key()
    inter = make_certificate("Test Intermediate CA", inter_key, "Test Root CA", root_key, ca=True)

    leaf_key = _ec_key()
    leaf = make_certificate("Pass Signer", leaf_key, "Test Intermediate CA", inter_key)

    other_key = _ec_key()
    other_root = make_certificate("Other Root CA", other_key, "Other Root CA", other_key, ca=True)

    return SimpleNamespace(
        root_key=root_key,
        root=root,
        inter_key=inter_key,
        inter=inter,
        leaf_key=leaf_key,
        leaf=leaf,
        chain=(leaf, inter),
        other_key=other_key,
        other_root=other_root,
        credentials=Credentials(private_key=leaf_key, certificate_chain=(leaf, inter)),
        trust=TrustContext(anchors=(root,)),
    )


@pytest.fixture
def issue_leaf(pki):
    """Factory for signer certificates issued by the test intermediate."""
    def _issue(key=None, **kwargs):
        key = key or _ec_key()
        cert = make_certificate("Custom Signer", key, "Test Intermediate CA", pki.inter_key, **kwargs)
        return key, cert
    return _issue


@pytest.fixture
def pass_dir(tmp_path: Path) -> Path:
    """Unsigned bundle source with a.txt="hello" and b.txt="world"."""
    source = tmp_path / "Sample.pass"
    source.mkdir()
    (source / "a.txt").write_bytes(b"hello")
    (source / "b.txt").write_bytes(b"world")
    return source

"""Signature engine and trust validation tests."""

import dataclasses
from datetime import datetime, timedelta, timezone

import pytest
from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, rsa

from conftest import make_certificate, make_crl
from signpass import (
    CertificateChainError,
    ErrorCode,
    MalformedBundleError,
    SignatureBlob,
    SigningKeyError,
    TrustContext,
    canonical_bytes,
    sign_manifest,
    verify_signature,
)

MANIFEST = b'{"algorithm":"sha256","files":{},"version":1}'


class TestSignManifest:
    """Producing signatures."""

    def test_sign_then_verify(self, pki):
        blob = sign_manifest(MANIFEST, pki.leaf_key, pki.chain)
        result = verify_signature(MANIFEST, blob, pki.trust)

        assert result.accepted, result.reason
        assert result.signer_identity == "CN=Pass Signer"
        assert result.details["path"] == ["CN=Pass Signer", "CN=Test Intermediate CA", "CN=Test Root CA"]

    def test_serialized_blob_verifies(self, pki):
        blob = sign_manifest(MANIFEST, pki.leaf_key, pki.chain)
        data = blob.to_bytes()

        assert SignatureBlob.from_bytes(data) == blob
        assert verify_signature(MANIFEST, data, pki.trust).accepted

    def test_signing_time_recorded(self, pki):
        when = datetime(2026, 3, 1, 12, 30, 15, 999, tzinfo=timezone.utc)
        blob = sign_manifest(MANIFEST, pki.leaf_key, pki.chain, signed_at=when)
        assert blob.signed_at == when.replace(microsecond=0)
        assert blob.to_dict()["signed_at"] == "2026-03-01T12:30:15Z"

    @pytest.mark.parametrize("make_key, algorithm", [
        (lambda: rsa.generate_private_key(public_exponent=65537, key_size=2048), "rsa-pkcs1v15-sha256"),
        (lambda: ec.generate_private_key(ec.SECP384R1()), "ecdsa-sha256"),
        (ed25519.Ed25519PrivateKey.generate, "ed25519"),
    ])
    def test_key_types(self, pki, issue_leaf, make_key, algorithm):
        key, cert = issue_leaf(key=make_key())
        blob = sign_manifest(MANIFEST, key, (cert, pki.inter))

        assert blob.algorithm == algorithm
        assert verify_signature(MANIFEST, blob, pki.trust).accepted

    def test_key_does_not_match_leaf(self, pki):
        with pytest.raises(SigningKeyError):
            sign_manifest(MANIFEST, pki.other_key, pki.chain)

    def test_empty_chain(self, pki):
        with pytest.raises(CertificateChainError):
            sign_manifest(MANIFEST, pki.leaf_key, ())

    def test_chain_with_gap(self, pki):
        with pytest.raises(CertificateChainError):
            sign_manifest(MANIFEST, pki.leaf_key, (pki.leaf, pki.root))

    def test_chain_out_of_order(self, pki):
        with pytest.raises(CertificateChainError):
            sign_manifest(MANIFEST, pki.leaf_key, (pki.leaf, pki.root, pki.inter))


class TestVerifySignature:
    """Checking signatures against manifests and trust contexts."""

    def test_different_manifest_is_mismatch(self, pki):
        blob = sign_manifest(MANIFEST, pki.leaf_key, pki.chain)
        result = verify_signature(MANIFEST + b" ", blob, pki.trust)

        assert not result.accepted
        assert result.code == ErrorCode.SIGNATURE_MISMATCH
        assert result.signer_identity is None

    def test_mismatch_reported_before_trust(self, pki):
        blob = sign_manifest(MANIFEST, pki.leaf_key, pki.chain)
        untrusted = TrustContext(anchors=(pki.other_root,))
        result = verify_signature(b"{}", blob, untrusted)
        assert result.code == ErrorCode.SIGNATURE_MISMATCH

    def test_corrupted_signature_bytes(self, pki):
        blob = sign_manifest(MANIFEST, pki.leaf_key, pki.chain)
        broken = dataclasses.replace(blob, signature=blob.signature[:-1] + bytes([blob.signature[-1] ^ 1]))
        result = verify_signature(MANIFEST, broken, pki.trust)
        assert result.code == ErrorCode.SIGNATURE_MISMATCH

    def test_swapped_signing_time(self, pki):
        blob = sign_manifest(MANIFEST, pki.leaf_key, pki.chain)
        moved = dataclasses.replace(blob, signed_at=blob.signed_at - timedelta(days=1))
        result = verify_signature(MANIFEST, moved, pki.trust)
        assert result.code == ErrorCode.SIGNATURE_MISMATCH

    def test_untrusted_root(self, pki):
        blob = sign_manifest(MANIFEST, pki.leaf_key, pki.chain)
        result = verify_signature(MANIFEST, blob, TrustContext(anchors=(pki.other_root,)))

        assert not result.accepted
        assert result.code == ErrorCode.UNTRUSTED_SIGNER

    def test_no_anchors_fails_closed(self, pki):
        blob = sign_manifest(MANIFEST, pki.leaf_key, pki.chain)
        result = verify_signature(MANIFEST, blob, TrustContext())
        assert result.code == ErrorCode.UNTRUSTED_SIGNER

    def test_self_signed_signer_needs_anchor(self):
        key = ec.generate_private_key(ec.SECP256R1())
        cert = make_certificate("Self Signed", key, "Self Signed", key)
        blob = sign_manifest(MANIFEST, key, (cert,))
        result = verify_signature(MANIFEST, blob, TrustContext(anchors=(cert,)))
        assert result.accepted

        other = TrustContext(anchors=(make_certificate("Root", key, "Root", key, ca=True),))
        assert verify_signature(MANIFEST, blob, other).code == ErrorCode.UNTRUSTED_SIGNER

    def test_intermediate_from_trust_context(self, pki):
        blob = sign_manifest(MANIFEST, pki.leaf_key, (pki.leaf,))

        assert verify_signature(MANIFEST, blob, pki.trust).code == ErrorCode.UNTRUSTED_SIGNER

        with_inter = TrustContext(anchors=(pki.root,), intermediates=(pki.inter,))
        assert verify_signature(MANIFEST, blob, with_inter).accepted

    def test_expired_signer(self, pki, issue_leaf):
        now = datetime.now(timezone.utc)
        key, cert = issue_leaf(not_before=now - timedelta(days=10), not_after=now - timedelta(days=1))
        blob = sign_manifest(MANIFEST, key, (cert, pki.inter))

        result = verify_signature(MANIFEST, blob, pki.trust)
        assert result.code == ErrorCode.UNTRUSTED_SIGNER
        assert "expired" in result.reason

    def test_validation_time_outside_window(self, pki):
        blob = sign_manifest(MANIFEST, pki.leaf_key, pki.chain)
        future = TrustContext(
            anchors=(pki.root,),
            validation_time=datetime.now(timezone.utc) + timedelta(days=365),
        )
        assert verify_signature(MANIFEST, blob, future).code == ErrorCode.UNTRUSTED_SIGNER

    def test_signer_without_digital_signature_usage(self, pki, issue_leaf):
        usage = x509.KeyUsage(
            digital_signature=False,
            content_commitment=True,
            key_encipherment=False,
            data_encipherment=False,
            key_agreement=False,
            key_cert_sign=False,
            crl_sign=False,
            encipher_only=False,
            decipher_only=False,
        )
        key, cert = issue_leaf(key_usage=usage)
        blob = sign_manifest(MANIFEST, key, (cert, pki.inter))

        assert verify_signature(MANIFEST, blob, pki.trust).code == ErrorCode.UNTRUSTED_SIGNER

        lenient = dataclasses.replace(pki.trust, require_digital_signature=False)
        assert verify_signature(MANIFEST, blob, lenient).accepted

    def test_malformed_blob(self, pki):
        result = verify_signature(MANIFEST, b"not a signature", pki.trust)
        assert result.code == ErrorCode.MALFORMED_BUNDLE

    def test_from_bytes_rejects_missing_fields(self, pki):
        blob = sign_manifest(MANIFEST, pki.leaf_key, pki.chain)
        doc = blob.to_dict()
        del doc["signature"]
        with pytest.raises(MalformedBundleError):
            SignatureBlob.from_bytes(canonical_bytes(doc))

    def test_from_bytes_rejects_wrongly_typed_fields(self, pki):
        blob = sign_manifest(MANIFEST, pki.leaf_key, pki.chain)
        for name, value in [
            ("manifest_digest", 5),
            ("manifest_digest", None),
            ("signed_at", 5),
            ("signature", []),
            ("certificates", [5]),
        ]:
            doc = blob.to_dict()
            doc[name] = value
            with pytest.raises(MalformedBundleError):
                SignatureBlob.from_bytes(canonical_bytes(doc))


def _ca_usage(key_cert_sign: bool) -> x509.KeyUsage:
    return x509.KeyUsage(
        digital_signature=False,
        content_commitment=False,
        key_encipherment=False,
        data_encipherment=False,
        key_agreement=False,
        key_cert_sign=key_cert_sign,
        crl_sign=True,
        encipher_only=False,
        decipher_only=False,
    )


class TestIssuerConstraints:
    """CA certificates on the path must be allowed to issue."""

    def _chain_below(self, pki, **inter_kwargs):
        """root -> constrained intermediate -> sub CA -> signer."""
        inter_key = ec.generate_private_key(ec.SECP256R1())
        inter = make_certificate(
            "Constrained CA", inter_key, "Test Root CA", pki.root_key, ca=True, **inter_kwargs
        )
        sub_key = ec.generate_private_key(ec.SECP256R1())
        sub = make_certificate("Sub CA", sub_key, "Constrained CA", inter_key, ca=True)
        leaf_key = ec.generate_private_key(ec.SECP256R1())
        leaf = make_certificate("Deep Signer", leaf_key, "Sub CA", sub_key)
        return sign_manifest(MANIFEST, leaf_key, (leaf, sub, inter))

    def test_path_length_respected(self, pki):
        blob = self._chain_below(pki, path_length=1)
        assert verify_signature(MANIFEST, blob, pki.trust).accepted

    def test_path_length_exceeded(self, pki):
        blob = self._chain_below(pki, path_length=0)
        result = verify_signature(MANIFEST, blob, pki.trust)
        assert result.code == ErrorCode.UNTRUSTED_SIGNER
        assert "path length" in result.reason

    def test_intermediate_allowed_to_sign_certificates(self, pki):
        blob = self._chain_below(pki, key_usage=_ca_usage(key_cert_sign=True))
        assert verify_signature(MANIFEST, blob, pki.trust).accepted

    def test_intermediate_without_cert_sign_usage(self, pki):
        blob = self._chain_below(pki, key_usage=_ca_usage(key_cert_sign=False))
        result = verify_signature(MANIFEST, blob, pki.trust)
        assert result.code == ErrorCode.UNTRUSTED_SIGNER
        assert "certificate signing" in result.reason


class TestRevocation:
    """Optional CRL checking."""

    def _trust(self, pki, crls):
        return TrustContext(anchors=(pki.root,), crls=tuple(crls), check_revocation=True)

    def test_clean_crls_accept(self, pki):
        blob = sign_manifest(MANIFEST, pki.leaf_key, pki.chain)
        crls = [make_crl(pki.inter, pki.inter_key), make_crl(pki.root, pki.root_key)]
        assert verify_signature(MANIFEST, blob, self._trust(pki, crls)).accepted

    def test_revoked_signer(self, pki):
        blob = sign_manifest(MANIFEST, pki.leaf_key, pki.chain)
        crls = [
            make_crl(pki.inter, pki.inter_key, revoked_serials=[pki.leaf.serial_number]),
            make_crl(pki.root, pki.root_key),
        ]
        result = verify_signature(MANIFEST, blob, self._trust(pki, crls))
        assert result.code == ErrorCode.UNTRUSTED_SIGNER
        assert "revoked" in result.reason

    def test_missing_crl_fails_closed(self, pki):
        blob = sign_manifest(MANIFEST, pki.leaf_key, pki.chain)
        crls = [make_crl(pki.inter, pki.inter_key)]
        assert verify_signature(MANIFEST, blob, self._trust(pki, crls)).code == ErrorCode.UNTRUSTED_SIGNER

    def test_crl_signed_by_wrong_key_ignored(self, pki):
        blob = sign_manifest(MANIFEST, pki.leaf_key, pki.chain)
        forged = make_crl(pki.inter, pki.other_key)
        crls = [forged, make_crl(pki.root, pki.root_key)]
        assert verify_signature(MANIFEST, blob, self._trust(pki, crls)).code == ErrorCode.UNTRUSTED_SIGNER

    def test_revocation_off_by_default(self, pki):
        blob = sign_manifest(MANIFEST, pki.leaf_key, pki.chain)
        assert verify_signature(MANIFEST, blob, pki.trust).accepted

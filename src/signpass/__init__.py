"""
signpass: sign and verify manifest-based file bundles.

A bundle is a directory or zip archive of files plus a canonical manifest
of their digests and a detached X.509 signature over that manifest.
"""

__version__ = "0.1.0"

from .canonical import canonical_bytes, canonical_json
from .digest import ContentDigest, digest_bytes, digest_stream
from .manifest import (
    MANIFEST_NAME,
    SIGNATURE_NAME,
    BundleEntry,
    Manifest,
    build_manifest,
    normalize_path,
    parse_manifest,
    serialize_manifest,
    verify_manifest,
)
from .signature import SignatureBlob, SignatureVerification, sign_manifest, verify_signature
from .trust import TrustContext, validate_chain
from .providers import (
    CredentialProvider,
    Credentials,
    PemCredentialProvider,
    PemTrustStore,
    TrustAnchorProvider,
    load_credentials,
    load_trust_context,
)
from .packager import UnpackedBundle, enumerate_source, pack, unpack
from .engine import (
    SignOptions,
    SignResult,
    Stage,
    VerificationReport,
    VerifyOptions,
    sign,
    verify,
)
from .errors import (
    CertificateChainError,
    DigestMismatchError,
    DuplicatePathError,
    ErrorCode,
    ExtraFileError,
    InvalidPathError,
    MalformedBundleError,
    MissingFileError,
    OperationCancelledError,
    ReservedNameCollisionError,
    SignatureMismatchError,
    SigningKeyError,
    SignpassError,
    UntrustedSignerError,
    VerificationResult,
    Violation,
    WriteError,
)

__all__ = [
    # Canonical JSON
    "canonical_json",
    "canonical_bytes",
    # Digests
    "ContentDigest",
    "digest_bytes",
    "digest_stream",
    # Manifest
    "MANIFEST_NAME",
    "SIGNATURE_NAME",
    "BundleEntry",
    "Manifest",
    "build_manifest",
    "normalize_path",
    "parse_manifest",
    "serialize_manifest",
    "verify_manifest",
    # Signatures and trust
    "SignatureBlob",
    "SignatureVerification",
    "sign_manifest",
    "verify_signature",
    "TrustContext",
    "validate_chain",
    # Providers
    "CredentialProvider",
    "Credentials",
    "PemCredentialProvider",
    "PemTrustStore",
    "TrustAnchorProvider",
    "load_credentials",
    "load_trust_context",
    # Packaging
    "UnpackedBundle",
    "enumerate_source",
    "pack",
    "unpack",
    # Sign / verify
    "SignOptions",
    "SignResult",
    "Stage",
    "VerificationReport",
    "VerifyOptions",
    "sign",
    "verify",
    # Errors
    "ErrorCode",
    "SignpassError",
    "InvalidPathError",
    "DuplicatePathError",
    "MissingFileError",
    "ExtraFileError",
    "DigestMismatchError",
    "SigningKeyError",
    "CertificateChainError",
    "SignatureMismatchError",
    "UntrustedSignerError",
    "MalformedBundleError",
    "ReservedNameCollisionError",
    "WriteError",
    "OperationCancelledError",
    "Violation",
    "VerificationResult",
]

"""
Error codes and types for signpass.

Every failure the engine can report has one ErrorCode. Operations that stop
at the first problem raise the matching SignpassError subclass; operations
that aggregate (manifest verification, bundle verification) collect
Violation records instead.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """
    Error codes shared by exceptions and report violations.
    """
    INVALID_PATH = "INVALID_PATH"
    DUPLICATE_PATH = "DUPLICATE_PATH"
    MISSING_FILE = "MISSING_FILE"
    EXTRA_FILE = "EXTRA_FILE"
    DIGEST_MISMATCH = "DIGEST_MISMATCH"
    SIGNING_KEY = "SIGNING_KEY"
    CERTIFICATE_CHAIN = "CERTIFICATE_CHAIN"
    SIGNATURE_MISMATCH = "SIGNATURE_MISMATCH"
    UNTRUSTED_SIGNER = "UNTRUSTED_SIGNER"
    MALFORMED_BUNDLE = "MALFORMED_BUNDLE"
    RESERVED_NAME_COLLISION = "RESERVED_NAME_COLLISION"
    WRITE_ERROR = "WRITE_ERROR"
    CANCELLED = "CANCELLED"


class SignpassError(Exception):
    """
    Base class for all signpass failures.

    Args:
        message: Human-readable description
        path: Bundle-relative path the error refers to, if any
        details: Extra machine-readable context
    """
    code: ErrorCode

    def __init__(
        self,
        message: str,
        path: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.path = path
        self.details = details or {}

    def to_violation(self) -> "Violation":
        return Violation(
            code=self.code,
            message=self.message,
            path=self.path,
            details=dict(self.details),
        )


class InvalidPathError(SignpassError):
    code = ErrorCode.INVALID_PATH


class DuplicatePathError(SignpassError):
    code = ErrorCode.DUPLICATE_PATH


class MissingFileError(SignpassError):
    code = ErrorCode.MISSING_FILE


class ExtraFileError(SignpassError):
    code = ErrorCode.EXTRA_FILE


class DigestMismatchError(SignpassError):
    code = ErrorCode.DIGEST_MISMATCH


class SigningKeyError(SignpassError):
    code = ErrorCode.SIGNING_KEY


class CertificateChainError(SignpassError):
    code = ErrorCode.CERTIFICATE_CHAIN


class SignatureMismatchError(SignpassError):
    code = ErrorCode.SIGNATURE_MISMATCH


class UntrustedSignerError(SignpassError):
    code = ErrorCode.UNTRUSTED_SIGNER


class MalformedBundleError(SignpassError):
    code = ErrorCode.MALFORMED_BUNDLE


class ReservedNameCollisionError(SignpassError):
    code = ErrorCode.RESERVED_NAME_COLLISION


class WriteError(SignpassError):
    code = ErrorCode.WRITE_ERROR


class OperationCancelledError(SignpassError):
    code = ErrorCode.CANCELLED


def check_cancelled(cancel: Any) -> None:
    """
    Raise OperationCancelledError if the caller's cancel signal is set.

    Any object with an ``is_set()`` method works (threading.Event,
    asyncio.Event, multiprocessing.Event).
    """
    if cancel is not None and cancel.is_set():
        raise OperationCancelledError("Operation cancelled by caller")


@dataclass
class Violation:
    """
    A single problem found while verifying a bundle.
    """
    code: ErrorCode
    message: str
    path: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "path": self.path,
            "details": self.details,
        }


@dataclass
class VerificationResult:
    """
    Result of comparing a manifest against the entries actually present.
    """
    valid: bool
    violations: list[Violation] = field(default_factory=list)
    files_checked: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "files_checked": self.files_checked,
            "violations": [v.to_dict() for v in self.violations],
        }

"""
Top-level sign and verify operations.

Both operations walk a fixed sequence of stages:

    sign:   IDLE -> ENUMERATING -> MANIFEST_BUILT -> SIGNED -> PACKAGED -> TERMINAL
    verify: IDLE -> ENUMERATING -> MANIFEST_BUILT -> VERIFIED -> REPORTED -> TERMINAL

Sign stops at the first error and re-raises it; the destination is never
left holding a partial bundle. Verify always returns a report listing
every problem found (only cancellation escapes as an exception), and
accepts a bundle only when file integrity and the signature both pass.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from .digest import DEFAULT_ALGORITHM
from .errors import (
    MalformedBundleError,
    OperationCancelledError,
    SignpassError,
    Violation,
    WriteError,
    check_cancelled,
)
from .manifest import (
    READ_ERRORS,
    Manifest,
    build_manifest,
    parse_manifest,
    serialize_manifest,
    verify_manifest,
)
from .packager import enumerate_source, pack, unpack
from .providers import Credentials
from .signature import SignatureVerification, sign_manifest, verify_signature
from .trust import TrustContext, subject_identity

logger = logging.getLogger(__name__)


class Stage(str, Enum):
    IDLE = "idle"
    ENUMERATING = "enumerating"
    MANIFEST_BUILT = "manifest_built"
    SIGNED = "signed"
    VERIFIED = "verified"
    PACKAGED = "packaged"
    REPORTED = "reported"
    TERMINAL = "terminal"


@dataclass
class SignOptions:
    """
    Options for signing a bundle.

    Attributes:
        algorithm: Digest algorithm for manifest entries
        as_archive: Write a zip archive instead of a directory
        overwrite: Replace an existing destination
        max_workers: Threads used to digest entries (1 = sequential)
        signed_at: Fixed signing time (default: now)
    """
    algorithm: str = DEFAULT_ALGORITHM
    as_archive: bool = False
    overwrite: bool = False
    max_workers: int = 1
    signed_at: datetime | None = None


@dataclass
class VerifyOptions:
    """Options for verifying a bundle."""
    max_workers: int = 1


@dataclass
class SignResult:
    """Outcome of a successful sign operation."""
    destination: Path
    manifest: Manifest
    signer_identity: str
    signed_at: datetime
    stage: Stage = Stage.TERMINAL

    def to_dict(self) -> dict[str, Any]:
        return {
            "destination": str(self.destination),
            "signer_identity": self.signer_identity,
            "signed_at": self.signed_at.isoformat(),
            "entry_count": len(self.manifest),
            "manifest": self.manifest.to_dict(),
        }


@dataclass
class VerificationReport:
    """
    Itemized result of verifying a bundle.

    ``violations`` holds integrity and structure problems ordered by path;
    the signature outcome is reported separately in ``signature``.
    """
    source: str
    accepted: bool = False
    signer_identity: str | None = None
    manifest_valid: bool = False
    files_checked: int = 0
    violations: list[Violation] = field(default_factory=list)
    signature: SignatureVerification | None = None
    stages: list[Stage] = field(default_factory=lambda: [Stage.IDLE])

    @property
    def reasons(self) -> list[str]:
        """Every failure message, integrity problems first."""
        reasons = [v.message for v in self.violations]
        if self.signature is not None and not self.signature.accepted and self.signature.reason:
            reasons.append(self.signature.reason)
        return reasons

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "accepted": self.accepted,
            "signer_identity": self.signer_identity,
            "manifest_valid": self.manifest_valid,
            "files_checked": self.files_checked,
            "violations": [v.to_dict() for v in self.violations],
            "signature": self.signature.to_dict() if self.signature else None,
            "reasons": self.reasons,
            "stages": [s.value for s in self.stages],
        }


class _StageLog:
    """
    Records stage transitions and reports them to the caller's logger.

    ``failure_level`` is ERROR for sign, where a failure aborts the
    operation, and WARNING for verify, where it is a rejected bundle.
    """

    def __init__(
        self,
        log: logging.Logger | logging.LoggerAdapter,
        operation: str,
        failure_level: int = logging.ERROR,
    ) -> None:
        self.log = log
        self.operation = operation
        self.failure_level = failure_level
        self.stages = [Stage.IDLE]

    @property
    def current(self) -> Stage:
        return self.stages[-1]

    def advance(self, stage: Stage) -> None:
        self.log.debug("%s: %s -> %s", self.operation, self.current.value, stage.value)
        self.stages.append(stage)

    def fail(self, exc: Exception) -> None:
        self.log.log(
            self.failure_level,
            "%s failed during %s: %s",
            self.operation,
            self.current.value,
            exc,
        )
        self.stages.append(Stage.TERMINAL)


def sign(
    source: Path,
    destination: Path,
    credentials: Credentials,
    options: SignOptions | None = None,
    cancel: Any = None,
    log: logging.Logger | logging.LoggerAdapter | None = None,
) -> SignResult:
    """
    Sign a bundle source into a new signed bundle.

    Args:
        source: Directory or zip archive with the files to sign
        destination: Where to write the signed bundle
        credentials: Private key and certificate chain
        options: Sign options
        cancel: Optional cancel signal with ``is_set()``
        log: Logger receiving progress messages (default: module logger)

    Returns:
        SignResult

    Raises:
        SignpassError: The first stage error (destination left untouched)
        OSError: If a source file cannot be read
    """
    options = options or SignOptions()
    log = log or logger
    stages = _StageLog(log, "sign")
    source = Path(source)
    destination = Path(destination)

    try:
        if destination.exists() and not options.overwrite:
            raise WriteError(f"Destination already exists: {destination}", path=str(destination))

        stages.advance(Stage.ENUMERATING)
        entries = enumerate_source(source)

        manifest = build_manifest(entries, options.algorithm, cancel, options.max_workers)
        manifest_bytes = serialize_manifest(manifest)
        stages.advance(Stage.MANIFEST_BUILT)

        check_cancelled(cancel)
        blob = sign_manifest(
            manifest_bytes,
            credentials.private_key,
            credentials.certificate_chain,
            signed_at=options.signed_at,
        )
        stages.advance(Stage.SIGNED)

        pack(
            entries,
            manifest_bytes,
            blob.to_bytes(),
            destination,
            as_archive=options.as_archive,
            overwrite=options.overwrite,
            cancel=cancel,
        )
        stages.advance(Stage.PACKAGED)
    except (SignpassError, *READ_ERRORS) as exc:
        stages.fail(exc)
        raise

    stages.advance(Stage.TERMINAL)
    identity = subject_identity(blob.leaf)
    log.info("Signed %d files from %s into %s as %s", len(manifest), source, destination, identity)
    return SignResult(
        destination=destination,
        manifest=manifest,
        signer_identity=identity,
        signed_at=blob.signed_at,
    )


def _read_failure(exc: Exception, source: Path) -> Violation:
    return MalformedBundleError(
        f"Cannot read bundle contents from {source}: {exc}"
    ).to_violation()


def verify(
    source: Path,
    trust: TrustContext,
    options: VerifyOptions | None = None,
    cancel: Any = None,
    log: logging.Logger | logging.LoggerAdapter | None = None,
) -> VerificationReport:
    """
    Verify a signed bundle.

    File integrity and the signature are checked independently; both
    results appear in the report even when one of them fails.

    Args:
        source: Signed bundle directory or archive
        trust: Trust anchors and policy
        options: Verify options
        cancel: Optional cancel signal with ``is_set()``
        log: Logger receiving progress messages (default: module logger)

    Returns:
        VerificationReport

    Raises:
        OperationCancelledError: If cancelled
    """
    options = options or VerifyOptions()
    log = log or logger
    source = Path(source)
    stages = _StageLog(log, "verify", failure_level=logging.WARNING)
    report = VerificationReport(source=str(source), stages=stages.stages)

    stages.advance(Stage.ENUMERATING)
    try:
        bundle = unpack(source)
    except OperationCancelledError:
        raise
    except SignpassError as exc:
        report.violations.append(exc.to_violation())
        stages.fail(exc)
        return report
    except READ_ERRORS as exc:
        report.violations.append(_read_failure(exc, source))
        stages.fail(exc)
        return report

    try:
        claimed = parse_manifest(bundle.manifest_bytes)
    except MalformedBundleError as exc:
        report.violations.append(exc.to_violation())
        claimed = None

    if claimed is not None:
        result = verify_manifest(claimed, bundle.entries, cancel, options.max_workers)
        report.violations.extend(result.violations)
        report.files_checked = result.files_checked
        report.manifest_valid = result.valid
    stages.advance(Stage.MANIFEST_BUILT)

    check_cancelled(cancel)
    report.signature = verify_signature(bundle.manifest_bytes, bundle.signature_bytes, trust)
    stages.advance(Stage.VERIFIED)

    report.accepted = (
        report.manifest_valid
        and report.signature.accepted
        and not report.violations
    )
    if report.signature.accepted:
        report.signer_identity = report.signature.signer_identity
    stages.advance(Stage.REPORTED)
    stages.advance(Stage.TERMINAL)

    if report.accepted:
        log.info("Bundle %s verified, signed by %s", source, report.signer_identity)
    else:
        log.warning(
            "Bundle %s rejected with %d problem(s)", source, len(report.reasons)
        )
    return report

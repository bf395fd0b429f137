"""
Manifest construction and checking for signpass bundles.

A manifest maps every bundle-relative file path to the digest of that
file's content. Its serialized form is canonical JSON so the signature
engine can sign and later re-check the exact same bytes:

    {"algorithm":"sha256","files":{"a.txt":"2cf2...","b.txt":"486e..."},"version":1}
"""

import io
import json
import logging
import re
import unicodedata
import zipfile
import zlib
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Callable, ContextManager, Iterable, Iterator

from .canonical import canonical_bytes
from .digest import DEFAULT_ALGORITHM, ContentDigest, digest_size, digest_stream
from .errors import (
    DigestMismatchError,
    DuplicatePathError,
    ExtraFileError,
    InvalidPathError,
    MalformedBundleError,
    MissingFileError,
    ReservedNameCollisionError,
    VerificationResult,
    Violation,
    check_cancelled,
)

logger = logging.getLogger(__name__)

MANIFEST_VERSION = 1

# Reserved entry names at the bundle root
MANIFEST_NAME = "manifest.json"
SIGNATURE_NAME = "signature"
RESERVED_NAMES = frozenset({MANIFEST_NAME, SIGNATURE_NAME})

# Failures raised while reading one entry's content
READ_ERRORS = (OSError, zipfile.BadZipFile, zlib.error)

_DRIVE_PREFIX = re.compile(r"^[A-Za-z]:")

Opener = Callable[[], ContextManager[BinaryIO]]


@dataclass(frozen=True)
class BundleEntry:
    """
    One file of a bundle.

    ``opener`` returns a fresh binary stream (usable in a ``with`` block)
    each time it is called, so the same entry can be hashed and then copied.
    """
    path: str
    opener: Opener = field(repr=False, compare=False)

    def open(self) -> ContextManager[BinaryIO]:
        return self.opener()

    def read(self) -> bytes:
        with self.open() as stream:
            return stream.read()

    @classmethod
    def from_bytes(cls, path: str, data: bytes) -> "BundleEntry":
        return cls(path=path, opener=lambda: io.BytesIO(data))


@dataclass
class Manifest:
    """
    Ordered mapping of bundle path to content digest.

    Paths are kept sorted so iteration order never depends on the order in
    which entries were enumerated or hashed.
    """
    algorithm: str = DEFAULT_ALGORITHM
    files: dict[str, ContentDigest] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.files = dict(sorted(self.files.items()))

    def __contains__(self, path: object) -> bool:
        return path in self.files

    def __iter__(self) -> Iterator[str]:
        return iter(self.files)

    def __len__(self) -> int:
        return len(self.files)

    def get(self, path: str) -> ContentDigest | None:
        return self.files.get(path)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": MANIFEST_VERSION,
            "algorithm": self.algorithm,
            "files": {path: d.hex() for path, d in self.files.items()},
        }


def normalize_path(raw: str) -> str:
    """
    Normalize a bundle-relative path.

    Backslashes become forward slashes, "." and empty segments are dropped
    and the result is NFC-normalized, so the same file yields the same key
    whichever filesystem or archive it was read from.

    Raises:
        InvalidPathError: If the path is empty, absolute, contains NUL or
            contains a ".." segment
    """
    if not isinstance(raw, str) or not raw:
        raise InvalidPathError("Entry path is empty", path=str(raw or ""))
    if "\x00" in raw:
        raise InvalidPathError(f"Entry path contains NUL: {raw!r}", path=raw)

    text = unicodedata.normalize("NFC", raw.replace("\\", "/"))
    if text.startswith("/") or _DRIVE_PREFIX.match(text):
        raise InvalidPathError(f"Entry path is absolute: {raw}", path=raw)

    segments = [s for s in text.split("/") if s not in ("", ".")]
    if ".." in segments:
        raise InvalidPathError(f"Entry path escapes the bundle root: {raw}", path=raw)
    if not segments:
        raise InvalidPathError(f"Entry path is empty after normalization: {raw!r}", path=raw)

    return "/".join(segments)


def is_reserved(path: str) -> bool:
    """True if the final path segment is a reserved bundle name."""
    return path.rsplit("/", 1)[-1] in RESERVED_NAMES


def _digest_entry(entry: BundleEntry, algorithm: str, cancel: Any) -> ContentDigest:
    check_cancelled(cancel)
    with entry.open() as stream:
        return digest_stream(stream, algorithm, cancel=cancel)


def _digest_entries(
    entries: dict[str, BundleEntry],
    algorithm: str,
    cancel: Any,
    max_workers: int,
    failures: dict[str, Exception] | None = None,
) -> dict[str, ContentDigest]:
    """
    Digest every entry, optionally on a thread pool.

    Results are keyed by path and returned sorted, independent of
    completion order. When ``failures`` is given, entries that cannot be
    read are recorded there by path instead of raising, and the remaining
    entries are still digested.
    """
    results: dict[str, ContentDigest] = {}

    if max_workers <= 1 or len(entries) <= 1:
        for path, entry in entries.items():
            try:
                results[path] = _digest_entry(entry, algorithm, cancel)
            except READ_ERRORS as exc:
                if failures is None:
                    raise
                failures[path] = exc
        return dict(sorted(results.items()))

    executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="signpass-digest")
    try:
        futures = {
            executor.submit(_digest_entry, entry, algorithm, cancel): path
            for path, entry in entries.items()
        }
        for future in as_completed(futures):
            try:
                results[futures[future]] = future.result()
            except READ_ERRORS as exc:
                if failures is None:
                    raise
                failures[futures[future]] = exc
    finally:
        executor.shutdown(wait=True, cancel_futures=True)

    return dict(sorted(results.items()))


def build_manifest(
    entries: Iterable[BundleEntry],
    algorithm: str = DEFAULT_ALGORITHM,
    cancel: Any = None,
    max_workers: int = 1,
) -> Manifest:
    """
    Compute the manifest for a set of bundle entries.

    Args:
        entries: Entries to include (any order)
        algorithm: Digest algorithm
        cancel: Optional cancel signal with ``is_set()``
        max_workers: Digest worker threads (1 = sequential)

    Returns:
        Manifest keyed by normalized path

    Raises:
        InvalidPathError: If an entry path is invalid
        DuplicatePathError: If two entries normalize to the same path
        ReservedNameCollisionError: If an entry uses a reserved name
        OperationCancelledError: If cancelled
    """
    digest_size(algorithm)

    by_path: dict[str, BundleEntry] = {}
    for entry in entries:
        path = normalize_path(entry.path)
        if is_reserved(path):
            raise ReservedNameCollisionError(
                f"Entry uses a reserved name: {path}", path=path
            )
        if path in by_path:
            raise DuplicatePathError(
                f"Duplicate entry path: {path}",
                path=path,
                details={"sources": [by_path[path].path, entry.path]},
            )
        by_path[path] = entry

    digests = _digest_entries(by_path, algorithm, cancel, max_workers)
    logger.debug("Built manifest with %d entries (%s)", len(digests), algorithm)
    return Manifest(algorithm=algorithm, files=digests)


def serialize_manifest(manifest: Manifest) -> bytes:
    """Canonical manifest bytes. Same mapping always yields the same bytes."""
    return canonical_bytes(manifest.to_dict())


def parse_manifest(data: bytes) -> Manifest:
    """
    Parse serialized manifest bytes.

    Raises:
        MalformedBundleError: If the bytes are not a well-formed manifest
    """
    try:
        doc = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedBundleError(f"Manifest is not valid JSON: {exc}") from exc

    if not isinstance(doc, dict):
        raise MalformedBundleError("Manifest must be a JSON object")

    version = doc.get("version")
    if version != MANIFEST_VERSION:
        raise MalformedBundleError(
            f"Unsupported manifest version: {version!r}",
            details={"version": version, "supported": [MANIFEST_VERSION]},
        )

    algorithm = doc.get("algorithm")
    files = doc.get("files")
    if not isinstance(algorithm, str):
        raise MalformedBundleError("Manifest missing digest algorithm")
    if not isinstance(files, dict):
        raise MalformedBundleError("Manifest missing files mapping")

    try:
        digest_size(algorithm)
    except ValueError as exc:
        raise MalformedBundleError(str(exc)) from exc

    digests: dict[str, ContentDigest] = {}
    for raw_path, hex_value in files.items():
        try:
            path = normalize_path(raw_path)
        except InvalidPathError as exc:
            raise MalformedBundleError(
                f"Manifest lists an invalid path: {exc}", path=raw_path
            ) from exc
        if path != raw_path:
            raise MalformedBundleError(
                f"Manifest path is not normalized: {raw_path!r}", path=raw_path
            )
        if not isinstance(hex_value, str):
            raise MalformedBundleError(f"Digest for {path} is not a string", path=path)
        try:
            digests[path] = ContentDigest.from_hex(algorithm, hex_value)
        except ValueError as exc:
            raise MalformedBundleError(f"Invalid digest for {path}: {exc}", path=path) from exc

    return Manifest(algorithm=algorithm, files=digests)


def verify_manifest(
    claimed: Manifest,
    entries: Iterable[BundleEntry],
    cancel: Any = None,
    max_workers: int = 1,
) -> VerificationResult:
    """
    Recompute entry digests and compare them to a claimed manifest.

    Every problem is collected; nothing stops at the first mismatch. An
    entry that cannot be read is reported as MALFORMED_BUNDLE for its own
    path and the remaining entries are still checked.

    Returns:
        VerificationResult with violations ordered by path
    """
    violations: list[Violation] = []
    present: dict[str, BundleEntry] = {}

    for entry in entries:
        try:
            path = normalize_path(entry.path)
        except InvalidPathError as exc:
            violations.append(exc.to_violation())
            continue
        if is_reserved(path):
            violations.append(ReservedNameCollisionError(
                f"Entry uses a reserved name: {path}", path=path,
            ).to_violation())
            continue
        if path in present:
            violations.append(DuplicatePathError(
                f"Duplicate entry path: {path}", path=path,
            ).to_violation())
            continue
        present[path] = entry

    unreadable: dict[str, Exception] = {}
    actual = _digest_entries(present, claimed.algorithm, cancel, max_workers, unreadable)

    for path, exc in unreadable.items():
        violations.append(MalformedBundleError(
            f"Cannot read {path}: {exc}", path=path,
        ).to_violation())

    for path in present:
        expected = claimed.get(path)
        if expected is None:
            violations.append(ExtraFileError(
                f"File not listed in manifest: {path}", path=path,
            ).to_violation())
            continue
        digest = actual.get(path)
        if digest is not None and not expected.matches(digest):
            violations.append(DigestMismatchError(
                f"Digest mismatch for {path}",
                path=path,
                details={"expected": str(expected), "actual": str(digest)},
            ).to_violation())

    for path in claimed:
        if path not in present:
            violations.append(MissingFileError(
                f"File listed in manifest is missing: {path}", path=path,
            ).to_violation())

    violations.sort(key=lambda v: (v.path or "", v.code.value))
    return VerificationResult(
        valid=len(violations) == 0,
        violations=violations,
        files_checked=len(actual),
    )

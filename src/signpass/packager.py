"""
Reading and writing bundles on disk.

A bundle is either a directory or a zip archive holding the original files
plus ``manifest.json`` and ``signature`` at its root. Writes go to a
temporary sibling of the destination and are renamed into place only once
complete, so a failed pack never leaves something that looks signed.
"""

import contextlib
import logging
import os
import shutil
import tempfile
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, BinaryIO, Iterator, Sequence

from .digest import CHUNK_SIZE
from .errors import (
    InvalidPathError,
    MalformedBundleError,
    OperationCancelledError,
    ReservedNameCollisionError,
    WriteError,
    check_cancelled,
)
from .manifest import (
    MANIFEST_NAME,
    SIGNATURE_NAME,
    BundleEntry,
    is_reserved,
    normalize_path,
)

logger = logging.getLogger(__name__)

# OS artifacts never treated as bundle content
IGNORED_NAMES = frozenset({".DS_Store"})

# Fixed member timestamp so identical input gives identical archives
_ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)


@dataclass
class UnpackedBundle:
    """Contents of a signed bundle as read from disk."""
    entries: list[BundleEntry] = field(default_factory=list)
    manifest_bytes: bytes = b""
    signature_bytes: bytes = b""


def _file_entry(path: str, file_path: Path) -> BundleEntry:
    return BundleEntry(path=path, opener=lambda: open(file_path, "rb"))


def _zip_entry(path: str, archive: Path, member: str) -> BundleEntry:
    @contextlib.contextmanager
    def opener() -> Iterator[BinaryIO]:
        with zipfile.ZipFile(archive) as zf, zf.open(member) as stream:
            yield stream

    return BundleEntry(path=path, opener=opener)


def _walk_directory(root: Path) -> Iterator[tuple[str, Path]]:
    """Yield (relative path, file path) for every regular file under root."""
    resolved_root = root.resolve()
    for file_path in sorted(root.rglob("*")):
        if file_path.name in IGNORED_NAMES:
            continue
        if file_path.is_symlink():
            target = file_path.resolve()
            try:
                target.relative_to(resolved_root)
            except ValueError:
                raise InvalidPathError(
                    f"Symlink points outside the bundle: {file_path} -> {target}",
                    path=file_path.relative_to(root).as_posix(),
                )
        if not file_path.is_file():
            continue
        yield file_path.relative_to(root).as_posix(), file_path


def _walk_archive(archive: Path) -> Iterator[tuple[str, str]]:
    """Yield (normalized path, member name) for every file member."""
    try:
        with zipfile.ZipFile(archive) as zf:
            infos = zf.infolist()
    except zipfile.BadZipFile as exc:
        raise MalformedBundleError(f"Unreadable archive {archive}: {exc}") from exc

    for info in infos:
        if info.is_dir():
            continue
        path = normalize_path(info.filename)
        if path.rsplit("/", 1)[-1] in IGNORED_NAMES:
            continue
        yield path, info.filename


def _is_archive(source: Path) -> bool:
    return source.is_file() and zipfile.is_zipfile(source)


def _list_entries(source: Path) -> list[BundleEntry]:
    if source.is_dir():
        return [
            _file_entry(normalize_path(rel), file_path)
            for rel, file_path in _walk_directory(source)
        ]
    if _is_archive(source):
        return [
            _zip_entry(path, source, member)
            for path, member in _walk_archive(source)
        ]
    if not source.exists():
        raise MalformedBundleError(f"Bundle source not found: {source}")
    raise MalformedBundleError(f"Unrecognized bundle container: {source}")


def enumerate_source(source: Path) -> list[BundleEntry]:
    """
    List the files of an unsigned bundle source.

    Args:
        source: Directory or zip archive

    Returns:
        Entries sorted by path

    Raises:
        ReservedNameCollisionError: If any file uses a reserved name
        InvalidPathError: If a path or symlink escapes the source
        MalformedBundleError: If the source is missing or not a directory
            or zip archive
    """
    entries = _list_entries(Path(source))
    for entry in entries:
        if is_reserved(entry.path):
            raise ReservedNameCollisionError(
                f"Source contains a file with a reserved name: {entry.path}",
                path=entry.path,
            )
    logger.debug("Enumerated %d entries from %s", len(entries), source)
    return sorted(entries, key=lambda e: e.path)


def unpack(source: Path) -> UnpackedBundle:
    """
    Read a signed bundle.

    Raises:
        MalformedBundleError: If the manifest or signature is missing or
            the container is not recognized
        ReservedNameCollisionError: If a reserved name appears below the root
    """
    bundle = UnpackedBundle()
    manifest_entry = None
    signature_entry = None

    for entry in _list_entries(Path(source)):
        if entry.path == MANIFEST_NAME:
            manifest_entry = entry
        elif entry.path == SIGNATURE_NAME:
            signature_entry = entry
        elif is_reserved(entry.path):
            raise ReservedNameCollisionError(
                f"Reserved name used outside the bundle root: {entry.path}",
                path=entry.path,
            )
        else:
            bundle.entries.append(entry)

    if manifest_entry is None:
        raise MalformedBundleError(f"Bundle has no {MANIFEST_NAME}: {source}")
    if signature_entry is None:
        raise MalformedBundleError(f"Bundle has no {SIGNATURE_NAME}: {source}")

    bundle.manifest_bytes = manifest_entry.read()
    bundle.signature_bytes = signature_entry.read()
    bundle.entries.sort(key=lambda e: e.path)
    return bundle


def _copy_stream(src: BinaryIO, dst: BinaryIO, cancel: Any) -> None:
    while True:
        check_cancelled(cancel)
        chunk = src.read(CHUNK_SIZE)
        if not chunk:
            return
        dst.write(chunk)


def _write_directory(
    target: Path,
    entries: Sequence[BundleEntry],
    extras: dict[str, bytes],
    cancel: Any,
) -> None:
    for entry in entries:
        check_cancelled(cancel)
        out_path = target / entry.path
        out_path.parent.mkdir(parents=True, exist_ok=True)
        with entry.open() as src, open(out_path, "wb") as dst:
            _copy_stream(src, dst, cancel)
    for name, data in extras.items():
        (target / name).write_bytes(data)


def _write_archive(
    target: Path,
    entries: Sequence[BundleEntry],
    extras: dict[str, bytes],
    cancel: Any,
) -> None:
    with zipfile.ZipFile(target, "w") as zf:
        for entry in entries:
            check_cancelled(cancel)
            info = zipfile.ZipInfo(entry.path, date_time=_ZIP_EPOCH)
            info.compress_type = zipfile.ZIP_DEFLATED
            with entry.open() as src, zf.open(info, "w") as dst:
                _copy_stream(src, dst, cancel)
        for name, data in extras.items():
            info = zipfile.ZipInfo(name, date_time=_ZIP_EPOCH)
            info.compress_type = zipfile.ZIP_DEFLATED
            zf.writestr(info, data)


def _remove(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path, ignore_errors=True)
    else:
        with contextlib.suppress(FileNotFoundError):
            path.unlink()


def _current_umask() -> int:
    mask = os.umask(0)
    os.umask(mask)
    return mask


def _apply_default_mode(staged: Path) -> None:
    """Give staged output the mode a plain create would have had."""
    base = 0o777 if staged.is_dir() else 0o666
    os.chmod(staged, base & ~_current_umask())


def _replace(staged: Path, destination: Path) -> None:
    """Move the staged output into place, swapping out any old bundle."""
    if not destination.exists():
        os.replace(staged, destination)
        return

    backup = destination.with_name(f".{destination.name}.old-{os.getpid()}")
    os.replace(destination, backup)
    try:
        os.replace(staged, destination)
    except OSError:
        os.replace(backup, destination)
        raise
    _remove(backup)


def pack(
    entries: Sequence[BundleEntry],
    manifest_bytes: bytes,
    signature_bytes: bytes,
    destination: Path,
    as_archive: bool = False,
    overwrite: bool = False,
    cancel: Any = None,
) -> Path:
    """
    Write a signed bundle.

    Args:
        entries: Original bundle files
        manifest_bytes: Serialized manifest
        signature_bytes: Serialized signature blob
        destination: Output directory or archive path
        as_archive: Write a zip archive instead of a directory
        overwrite: Replace an existing destination
        cancel: Optional cancel signal with ``is_set()``

    Returns:
        The destination path

    Raises:
        WriteError: On any I/O failure or if the destination exists and
            overwrite is not set; nothing is left at the destination
        OperationCancelledError: If cancelled; nothing is left either
    """
    destination = Path(destination)
    if destination.exists() and not overwrite:
        raise WriteError(f"Destination already exists: {destination}", path=str(destination))

    extras = {MANIFEST_NAME: manifest_bytes, SIGNATURE_NAME: signature_bytes}
    ordered = sorted(entries, key=lambda e: e.path)
    staged: Path | None = None

    try:
        destination.parent.mkdir(parents=True, exist_ok=True)
        if as_archive:
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{destination.name}.", suffix=".tmp", dir=destination.parent
            )
            os.close(fd)
            staged = Path(tmp_name)
            _write_archive(staged, ordered, extras, cancel)
        else:
            staged = Path(tempfile.mkdtemp(
                prefix=f".{destination.name}.", suffix=".tmp", dir=destination.parent
            ))
            _write_directory(staged, ordered, extras, cancel)
        _apply_default_mode(staged)
        _replace(staged, destination)
        staged = None
    except OperationCancelledError:
        logger.info("Packing cancelled, discarding partial output for %s", destination)
        raise
    except (OSError, zipfile.BadZipFile) as exc:
        raise WriteError(
            f"Failed to write bundle to {destination}: {exc}", path=str(destination)
        ) from exc
    finally:
        if staged is not None:
            _remove(staged)

    logger.debug("Wrote %s bundle to %s", "archive" if as_archive else "directory", destination)
    return destination

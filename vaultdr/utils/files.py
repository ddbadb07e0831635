"""File operations utilities for vaultdr."""

import fnmatch
import gzip
import hashlib
import logging
import os
import shutil
import tarfile
import tempfile
import zlib
from contextlib import contextmanager
from typing import Iterable, Iterator, List, Optional, Tuple

from .errors import IntegrityError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024
GZIP_MAGIC = b"\x1f\x8b"


@contextmanager
def scratch_workspace(prefix: str = "vaultdr-", root: Optional[str] = None) -> Iterator[str]:
    """
    Create a private scratch directory that is removed on every exit path.

    Args:
        prefix: Directory name prefix
        root: Parent directory (defaults to the system temp dir)

    Yields:
        str: Path to the scratch directory
    """
    if root:
        os.makedirs(root, exist_ok=True)
    path = tempfile.mkdtemp(prefix=prefix, dir=root)
    os.chmod(path, 0o700)
    logger.debug("Created scratch workspace %s", path)
    try:
        yield path
    finally:
        remove_path(path)
        logger.debug("Removed scratch workspace %s", path)


def remove_path(path: str) -> None:
    """Remove a file or directory tree if it exists."""
    try:
        if os.path.isdir(path) and not os.path.islink(path):
            shutil.rmtree(path)
        elif os.path.lexists(path):
            os.remove(path)
    except OSError as e:
        logger.warning("Could not remove %s: %s", path, e)


def file_digests(path: str) -> Tuple[str, str]:
    """
    Compute MD5 and SHA-256 digests of a file in one pass.

    Args:
        path: File to hash

    Returns:
        Tuple[str, str]: (md5 hex, sha256 hex)
    """
    md5 = hashlib.md5()
    sha256 = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            md5.update(chunk)
            sha256.update(chunk)
    return md5.hexdigest(), sha256.hexdigest()


def write_checksum_file(path: str, digest: str, filename: str) -> str:
    """Write a `<hex>  <filename>` sidecar."""
    with open(path, "w", encoding="utf-8") as f:
        f.write(f"{digest}  {filename}\n")
    return path


def read_checksum_file(path: str) -> str:
    """
    Read the digest from a checksum sidecar.

    Raises:
        IntegrityError: If the sidecar is empty or malformed
    """
    with open(path, encoding="utf-8") as f:
        line = f.readline().strip()
    digest = line.split()[0] if line else ""
    if not digest or any(c not in "0123456789abcdefABCDEF" for c in digest):
        raise IntegrityError(f"Malformed checksum file: {path}")
    return digest.lower()


def fsync_file(path: str) -> None:
    """Flush a finished file to stable storage."""
    fd = os.open(path, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def is_gzip_file(path: str) -> bool:
    """Check the gzip magic number."""
    with open(path, "rb") as f:
        return f.read(2) == GZIP_MAGIC


def human_size(size: float) -> str:
    """Format a byte count for display."""
    for unit in ("B", "KB", "MB", "GB"):
        if abs(size) < 1024:
            return f"{size:.1f}{unit}" if unit != "B" else f"{int(size)}B"
        size /= 1024
    return f"{size:.1f}TB"


def _matches(name: str, patterns: Iterable[str]) -> bool:
    base = os.path.basename(name.rstrip("/"))
    for pattern in patterns:
        if fnmatch.fnmatch(base, pattern) or fnmatch.fnmatch(name, pattern):
            return True
    return False


def create_tar_gz(
    output_path: str,
    base_dir: str,
    members: List[str],
    excludes: Optional[List[str]] = None,
) -> List[str]:
    """
    Create a gzip-compressed tar archive of paths relative to base_dir.

    Missing members are skipped. The archive is written to a `.partial`
    file and renamed into place once complete.

    Args:
        output_path: Destination archive path
        base_dir: Directory the members are relative to
        members: Relative paths or glob patterns to include
        excludes: Glob patterns matched against basenames and member paths

    Returns:
        List[str]: Members that were actually added
    """
    excludes = excludes or []
    added = []

    def exclude_filter(info: tarfile.TarInfo) -> Optional[tarfile.TarInfo]:
        if _matches(info.name, excludes):
            logger.debug("Excluding %s", info.name)
            return None
        return info

    resolved = []
    for member in members:
        if any(ch in member for ch in "*?["):
            matches = sorted(fnmatch.filter(os.listdir(base_dir), member))
            resolved.extend(matches)
        else:
            resolved.append(member)

    partial = output_path + ".partial"
    try:
        with tarfile.open(partial, "w:gz") as tar:
            for member in resolved:
                source = os.path.join(base_dir, member)
                if not os.path.lexists(source):
                    continue
                if _matches(member, excludes):
                    continue
                tar.add(source, arcname=member, filter=exclude_filter)
                added.append(member)
        fsync_file(partial)
        os.replace(partial, output_path)
    finally:
        if os.path.exists(partial):
            os.remove(partial)

    return added


def _normalize(name: str) -> str:
    while name.startswith("./"):
        name = name[2:]
    return name


def list_tar_members(path: str) -> List[str]:
    """
    List member names of a tar archive.

    Raises:
        IntegrityError: If the archive cannot be read
    """
    try:
        with tarfile.open(path, "r:*") as tar:
            return [_normalize(m.name) for m in tar.getmembers()]
    except (tarfile.TarError, EOFError, OSError, zlib.error) as e:
        raise IntegrityError(f"Archive is corrupt or unreadable: {os.path.basename(path)}", details=str(e)) from e


def _is_within(base: str, target: str) -> bool:
    base = os.path.realpath(base)
    target = os.path.realpath(target)
    return os.path.commonpath([base, target]) == base


def safe_extract(path: str, destination: str) -> List[str]:
    """
    Extract a tar archive, refusing members that escape the destination.

    Args:
        path: Archive path
        destination: Directory to extract into

    Returns:
        List[str]: Extracted member names

    Raises:
        IntegrityError: If the archive is corrupt or contains unsafe members
    """
    os.makedirs(destination, exist_ok=True)
    try:
        with tarfile.open(path, "r:*") as tar:
            members = tar.getmembers()
            for member in members:
                target = os.path.join(destination, member.name)
                if os.path.isabs(member.name) or not _is_within(destination, target):
                    raise IntegrityError(f"Unsafe path in archive: {member.name}")
                if member.issym() or member.islnk():
                    # Hard link names are relative to the archive root
                    link_base = destination if member.islnk() else os.path.dirname(target)
                    link_target = os.path.join(link_base, member.linkname)
                    if os.path.isabs(member.linkname) or not _is_within(destination, link_target):
                        raise IntegrityError(f"Unsafe link in archive: {member.name}")
                if member.isdev():
                    raise IntegrityError(f"Device file in archive: {member.name}")
            if hasattr(tarfile, "data_filter"):
                tar.extractall(destination, members=members, filter="data")
            else:
                tar.extractall(destination, members=members)
            return [m.name for m in members]
    except (tarfile.TarError, EOFError, zlib.error) as e:
        raise IntegrityError(f"Archive is corrupt or unreadable: {os.path.basename(path)}", details=str(e)) from e


def gzip_file(source: str, destination: str) -> str:
    """Compress a file with gzip."""
    with open(source, "rb") as src, gzip.open(destination, "wb") as dst:
        shutil.copyfileobj(src, dst, CHUNK_SIZE)
    return destination


def gunzip_file(source: str, destination: str) -> str:
    """
    Decompress a gzip file.

    Raises:
        IntegrityError: If the file is not valid gzip
    """
    try:
        with gzip.open(source, "rb") as src, open(destination, "wb") as dst:
            shutil.copyfileobj(src, dst, CHUNK_SIZE)
    except (OSError, EOFError, zlib.error) as e:
        remove_path(destination)
        raise IntegrityError(f"Corrupt gzip file: {os.path.basename(source)}", details=str(e)) from e
    return destination


class FileManager:
    """Manages file operations on the protected deployment."""

    def __init__(self, verbose: bool = False):
        """Initialize file manager."""
        self.verbose = verbose

    def set_file_permissions(self, file_path: str, mode: int) -> None:
        """
        Set file permissions.

        Args:
            file_path: Path to file
            mode: Permission mode (e.g., 0o600)
        """
        os.chmod(file_path, mode)
        logger.debug("Set permissions %s for %s", oct(mode), file_path)

    def set_ownership(self, path: str, uid: int, gid: int, recursive: bool = True) -> List[str]:
        """
        Change ownership of a path, optionally recursively.

        Args:
            path: File or directory
            uid: Owner user id
            gid: Owner group id
            recursive: Walk directories

        Returns:
            List[str]: Paths that could not be changed
        """
        failures = []
        targets = [path]
        if recursive and os.path.isdir(path):
            for root, dirs, files in os.walk(path):
                targets.extend(os.path.join(root, name) for name in dirs + files)
        for target in targets:
            try:
                os.chown(target, uid, gid, follow_symlinks=False)
            except OSError as e:
                failures.append(f"{target}: {e}")
        return failures

    def make_scripts_executable(self, directory: str) -> List[str]:
        """Add execute bits to top-level *.sh files."""
        changed = []
        if not os.path.isdir(directory):
            return changed
        for name in sorted(os.listdir(directory)):
            path = os.path.join(directory, name)
            if name.endswith(".sh") and os.path.isfile(path):
                mode = os.stat(path).st_mode
                os.chmod(path, mode | 0o111)
                changed.append(path)
        return changed

    def backup_file(self, file_path: str, backup_suffix: str = ".backup") -> str:
        """
        Create backup of existing file.

        Args:
            file_path: Path to file to backup
            backup_suffix: Suffix for backup file

        Returns:
            str: Path to backup file
        """
        if not os.path.exists(file_path):
            raise FileNotFoundError(f"File not found: {file_path}")

        backup_path = file_path + backup_suffix

        counter = 1
        original_backup = backup_path
        while os.path.exists(backup_path):
            backup_path = f"{original_backup}.{counter}"
            counter += 1

        shutil.copy2(file_path, backup_path)
        logger.debug("Created backup: %s", backup_path)

        return backup_path

    def directory_size(self, path: str) -> int:
        """Total size in bytes of regular files under path."""
        total = 0
        if os.path.isfile(path):
            return os.path.getsize(path)
        for root, _dirs, files in os.walk(path):
            for name in files:
                full = os.path.join(root, name)
                if os.path.isfile(full) and not os.path.islink(full):
                    total += os.path.getsize(full)
        return total

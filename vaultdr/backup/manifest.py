"""Archive bundling, checksum sidecars and manifests."""

import json
import logging
import os
import platform
import tarfile
from datetime import datetime
from typing import List, Optional

from vaultdr import __version__
from vaultdr.templates import render_template
from vaultdr.utils.files import (
    file_digests,
    fsync_file,
    human_size,
    remove_path,
    write_checksum_file,
)

from .models import BackupArchive, ChecksumPair, Manifest, ManifestEntry

logger = logging.getLogger(__name__)

ARCHIVE_SUFFIX = ".tar.gz"


def sidecar_paths(archive_path: str) -> dict:
    """Paths of every sidecar belonging to an archive."""
    directory = os.path.dirname(archive_path)
    filename = os.path.basename(archive_path)
    name = filename[: -len(ARCHIVE_SUFFIX)] if filename.endswith(ARCHIVE_SUFFIX) else filename
    return {
        "sha256": archive_path + ".sha256",
        "md5": archive_path + ".md5",
        "manifest_txt": os.path.join(directory, f"{name}_manifest.txt"),
        "manifest_json": os.path.join(directory, f"{name}_manifest.json"),
    }


def load_manifest(archive_path: str) -> Optional[Manifest]:
    """Read the JSON manifest next to an archive, if any."""
    path = sidecar_paths(archive_path)["manifest_json"]
    if not os.path.exists(path):
        return None
    with open(path, encoding="utf-8") as f:
        return Manifest.from_dict(json.load(f))


def restore_commands(archive_file: str) -> List[str]:
    return [
        "docker compose down",
        f"vaultdr restore {archive_file}",
        "./startup.sh",
        "vaultdr rehearse --automated",
    ]


class ArchiveBuilder:
    """Bundles staged components into the final archive with its sidecars."""

    def __init__(self, verbose: bool = False):
        self.verbose = verbose

    def build(self, name: str, staging_dir: str, components: List[str], output_dir: str) -> BackupArchive:
        """
        Bundle components, then digest the finished file and write sidecars.

        Args:
            name: Archive base name (without extension)
            staging_dir: Directory holding the component files
            components: Member names to include, in order
            output_dir: Destination directory

        Returns:
            BackupArchive: The finished archive

        Raises:
            OSError: If writing fails; nothing partial is left behind
        """
        os.makedirs(output_dir, exist_ok=True)
        archive_file = name + ARCHIVE_SUFFIX
        archive_path = os.path.join(output_dir, archive_file)
        partial = archive_path + ".partial"
        sidecars = sidecar_paths(archive_path)
        created_at = datetime.now()

        try:
            with tarfile.open(partial, "w:gz") as tar:
                for member in components:
                    tar.add(os.path.join(staging_dir, member), arcname=member)
            fsync_file(partial)
            os.replace(partial, archive_path)

            # Digests only over the renamed, fully flushed file
            md5, sha256 = file_digests(archive_path)
            checksums = ChecksumPair(md5=md5, sha256=sha256)
            write_checksum_file(sidecars["sha256"], sha256, archive_file)
            write_checksum_file(sidecars["md5"], md5, archive_file)

            manifest = Manifest(
                archive_name=name,
                created_at=created_at,
                hostname=platform.node(),
                tool_version=__version__,
                components=tuple(
                    ManifestEntry(member, os.path.getsize(os.path.join(staging_dir, member))) for member in components
                ),
                restore_commands=tuple(restore_commands(archive_file)),
            )
            size = os.path.getsize(archive_path)
            self._write_manifest(manifest, checksums, archive_file, size, sidecars)
        except BaseException:
            for path in [partial, archive_path] + list(sidecars.values()):
                remove_path(path)
            raise

        logger.info("Created %s (%s)", archive_file, human_size(size))
        return BackupArchive(
            name=name,
            created_at=created_at,
            path=archive_path,
            size_bytes=size,
            components=tuple(components),
            checksums=checksums,
        )

    def _write_manifest(self, manifest: Manifest, checksums: ChecksumPair, archive_file: str, size: int, sidecars: dict) -> None:
        text = render_template(
            "manifest.txt.j2",
            manifest=manifest,
            checksums=checksums,
            archive_file=archive_file,
            archive_size=human_size(size),
        )
        with open(sidecars["manifest_txt"], "w", encoding="utf-8") as f:
            f.write(text)

        data = manifest.to_dict()
        data["checksums"] = {"md5": checksums.md5, "sha256": checksums.sha256}
        data["size_bytes"] = size
        with open(sidecars["manifest_json"], "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)

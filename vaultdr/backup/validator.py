"""Structural and deep validation of full backup archives."""

import json
import logging
import os
from typing import List, Optional

from vaultdr.config.settings import DRConfig
from vaultdr.utils.errors import IntegrityError
from vaultdr.utils.files import (
    file_digests,
    human_size,
    is_gzip_file,
    list_tar_members,
    read_checksum_file,
    safe_extract,
    scratch_workspace,
)

from . import database
from .manifest import load_manifest, sidecar_paths
from .models import CheckStatus, ValidationReport
from .producers import CONFIG_ARCHIVE, DATA_ARCHIVE, SYSTEM_INFO, TLS_ARCHIVE, is_dump_member

logger = logging.getLogger(__name__)

DEFAULT_COMPONENTS = (DATA_ARCHIVE, CONFIG_ARCHIVE, SYSTEM_INFO)
REQUIRED_CONFIG_FILES = ("settings.env", "docker-compose.yml")


class BackupValidator:
    """Checks that an archive can be trusted before anything relies on it."""

    def __init__(self, config: DRConfig, verbose: bool = False):
        self.config = config
        self.verbose = verbose

    def validate(self, path: str, deep: bool = False) -> ValidationReport:
        """
        Validate one archive.

        Args:
            path: Archive path
            deep: Also extract and inspect every component

        Returns:
            ValidationReport: Per-check results and overall verdict
        """
        report = ValidationReport(archive_path=path, deep=deep)

        if not os.path.isfile(path):
            report.add("exists", CheckStatus.FAILURE, f"{path} not found")
            return report
        report.add("exists", CheckStatus.PASS)

        size = os.path.getsize(path)
        minimum = self.config.validation.min_size_bytes
        if size < minimum:
            report.add("size", CheckStatus.FAILURE, f"{human_size(size)} is below minimum {human_size(minimum)}")
        else:
            report.add("size", CheckStatus.PASS, human_size(size))

        self._check_checksums(report, path)

        members = self._check_format(report, path)
        if members is None:
            self._log(report)
            return report

        self._check_components(report, path, members)

        if deep:
            self._deep_validate(report, path)

        self._log(report)
        return report

    def validate_many(self, paths: List[str], deep: bool = False) -> List[ValidationReport]:
        return [self.validate(path, deep=deep) for path in paths]

    def _check_checksums(self, report: ValidationReport, path: str) -> None:
        sidecars = sidecar_paths(path)
        md5, sha256 = file_digests(path)
        for kind, actual in (("sha256", sha256), ("md5", md5)):
            check = f"checksum_{kind}"
            sidecar = sidecars[kind]
            if not os.path.exists(sidecar):
                report.add(check, CheckStatus.WARNING, f"{os.path.basename(sidecar)} missing")
                continue
            try:
                expected = read_checksum_file(sidecar)
            except IntegrityError as e:
                report.add(check, CheckStatus.FAILURE, e.message)
                continue
            if expected != actual:
                report.add(check, CheckStatus.FAILURE, f"mismatch: expected {expected}, got {actual}")
            else:
                report.add(check, CheckStatus.PASS, actual)

    def _check_format(self, report: ValidationReport, path: str) -> Optional[List[str]]:
        if not is_gzip_file(path):
            report.add("format", CheckStatus.FAILURE, "not a gzip file")
            report.corrupt_components.append(os.path.basename(path))
            return None
        try:
            members = list_tar_members(path)
        except IntegrityError as e:
            report.add("format", CheckStatus.FAILURE, e.details or e.message)
            report.corrupt_components.append(os.path.basename(path))
            return None
        report.add("format", CheckStatus.PASS, f"{len(members)} members")
        return members

    def _check_components(self, report: ValidationReport, path: str, members: List[str]) -> None:
        try:
            manifest = load_manifest(path)
        except (ValueError, KeyError) as e:
            report.add("manifest", CheckStatus.WARNING, f"manifest unreadable: {e}")
            manifest = None

        if manifest is not None:
            missing = [name for name in manifest.component_names() if name not in members]
            if missing:
                report.missing_components.extend(missing)
                report.add("components", CheckStatus.FAILURE, f"declared but absent: {', '.join(missing)}")
            else:
                report.add("components", CheckStatus.PASS, f"{len(manifest.components)} declared components present")
        else:
            missing = [name for name in DEFAULT_COMPONENTS if name not in members]
            if missing:
                report.missing_components.extend(missing)
                report.add("components", CheckStatus.WARNING, f"no manifest; expected components absent: {', '.join(missing)}")
            else:
                report.add("components", CheckStatus.PASS, "no manifest; expected components present")

        if not any(is_dump_member(name) for name in members):
            report.add("database_dump", CheckStatus.WARNING, "no database dump in archive")

    def _deep_validate(self, report: ValidationReport, path: str) -> None:
        with scratch_workspace(prefix="validate-", root=self.config.paths.scratch_root) as scratch:
            extract_dir = os.path.join(scratch, "extract")
            try:
                members = safe_extract(path, extract_dir)
            except IntegrityError as e:
                report.add("extract", CheckStatus.FAILURE, e.details or e.message)
                return
            report.add("extract", CheckStatus.PASS)

            self._check_nested(report, extract_dir, DATA_ARCHIVE, required=True)
            config_members = self._check_nested(report, extract_dir, CONFIG_ARCHIVE, required=True)
            if config_members is not None:
                absent = [name for name in REQUIRED_CONFIG_FILES if name not in config_members]
                if absent:
                    report.add("configuration_files", CheckStatus.WARNING, f"missing {', '.join(absent)}")
                else:
                    report.add("configuration_files", CheckStatus.PASS)
            self._check_nested(report, extract_dir, TLS_ARCHIVE, required=False)
            self._check_system_info(report, extract_dir)

            dumps = [name for name in members if is_dump_member(name)]
            if dumps:
                self._check_dump(report, os.path.join(extract_dir, dumps[0]), scratch)

    def _check_nested(self, report: ValidationReport, extract_dir: str, name: str, required: bool) -> Optional[List[str]]:
        check = name.split(".")[0]
        nested = os.path.join(extract_dir, name)
        if not os.path.exists(nested):
            if required:
                report.add(check, CheckStatus.FAILURE, "missing")
                if name not in report.missing_components:
                    report.missing_components.append(name)
            else:
                report.add(check, CheckStatus.PASS, "not included")
            return None
        try:
            members = list_tar_members(nested)
        except IntegrityError as e:
            report.corrupt_components.append(name)
            report.add(check, CheckStatus.FAILURE if required else CheckStatus.WARNING, f"corrupt: {e.details or e.message}")
            return None
        report.add(check, CheckStatus.PASS, f"{len(members)} entries")
        return members

    def _check_system_info(self, report: ValidationReport, extract_dir: str) -> None:
        info = os.path.join(extract_dir, SYSTEM_INFO)
        if not os.path.exists(info):
            report.add("system_info", CheckStatus.WARNING, "missing")
        elif os.path.getsize(info) == 0:
            report.add("system_info", CheckStatus.WARNING, "empty")
        else:
            report.add("system_info", CheckStatus.PASS)

    def _check_dump(self, report: ValidationReport, dump_path: str, scratch: str) -> None:
        essential = self.config.validation.essential_tables
        try:
            inspection = database.inspect_dump(dump_path, scratch, essential)
        except IntegrityError as e:
            report.corrupt_components.append(os.path.basename(dump_path))
            report.add("database", CheckStatus.FAILURE, e.details or e.message)
            return

        if inspection.placeholder:
            report.add("database", CheckStatus.WARNING, "placeholder dump, no schema (fresh install)")
        elif not inspection.essential_found:
            report.add("database", CheckStatus.FAILURE, "no essential tables found")
        elif inspection.essential_missing:
            report.add("database", CheckStatus.FAILURE, f"missing tables: {', '.join(inspection.essential_missing)}")
        elif not inspection.has_rows:
            report.add("database", CheckStatus.WARNING, "schema present but no data rows")
        else:
            counts = ", ".join(f"{t}={n}" for t, n in inspection.row_counts.items())
            report.add("database", CheckStatus.PASS, counts)

    def _log(self, report: ValidationReport) -> None:
        name = os.path.basename(report.archive_path)
        for check in report.checks:
            level = {
                CheckStatus.PASS: logging.DEBUG,
                CheckStatus.WARNING: logging.WARNING,
                CheckStatus.FAILURE: logging.ERROR,
            }[check.status]
            logger.log(level, "%s: %s %s %s", name, check.name, check.status.value, check.detail)
        logger.info("%s: %s", name, json.dumps({"verdict": report.verdict.value, "warnings": len(report.warnings)}))

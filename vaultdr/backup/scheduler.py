"""Crontab hooks for scheduled backups, validation and DR rehearsals."""

import logging
import os
import shlex
import shutil
import subprocess
from typing import List, Optional, Tuple

from vaultdr.config.settings import DRConfig
from vaultdr.utils.errors import PreconditionError, VaultDRError

logger = logging.getLogger(__name__)

MARKER = "# vaultdr:"


class BackupScheduler:
    """Renders and installs the crontab lines that drive vaultdr."""

    def __init__(self, config: DRConfig, config_path: Optional[str] = None, executable: Optional[str] = None):
        self.config = config
        self.config_path = config_path
        self.executable = executable or shutil.which("vaultdr") or "vaultdr"

    def jobs(self) -> List[Tuple[str, str, str]]:
        """
        Returns:
            List[Tuple[str, str, str]]: (job name, cron expression, vaultdr arguments)
        """
        return [
            ("full-backup", self.config.backup.schedule, "backup run"),
            ("db-backup", self.config.backup.db_schedule, "backup database"),
            ("validate", self.config.validation.schedule, "validate --latest --deep"),
            ("dr-test", self.config.rehearsal.schedule, "rehearse --automated"),
        ]

    def render(self) -> List[str]:
        root = self.config.paths.project_root
        base = [self.executable, "--project-root", root]
        if self.config_path:
            base.extend(["-c", os.path.abspath(self.config_path)])
        prefix = " ".join(shlex.quote(part) for part in base)

        lines = []
        for job, cron, args in self.jobs():
            log = shlex.quote(os.path.join(self.config.paths.log_dir, f"{job}.log"))
            lines.append(f"{cron} {prefix} {args} >> {log} 2>&1 {MARKER}{job}")
        return lines

    def merge(self, current: str) -> str:
        """Replace earlier vaultdr lines in a crontab with freshly rendered ones."""
        kept = [line for line in current.splitlines() if MARKER not in line]
        while kept and not kept[-1].strip():
            kept.pop()
        return "\n".join(kept + self.render()) + "\n"

    def install(self, dry_run: bool = False) -> str:
        """
        Merge the rendered lines into the user's crontab.

        Args:
            dry_run: Return the merged crontab without installing it

        Returns:
            str: The crontab content

        Raises:
            PreconditionError: If crontab is not available
            VaultDRError: If crontab rejects the new table
        """
        if shutil.which("crontab") is None:
            raise PreconditionError(
                "crontab is not installed",
                suggestions=["Install cron (e.g. apt install cron)", "Or copy the lines from 'vaultdr schedule show'"],
            )

        current = subprocess.run(["crontab", "-l"], capture_output=True, text=True)
        # crontab -l exits non-zero when the user has no crontab yet
        content = self.merge(current.stdout if current.returncode == 0 else "")
        if dry_run:
            return content

        result = subprocess.run(["crontab", "-"], input=content, capture_output=True, text=True)
        if result.returncode != 0:
            raise VaultDRError("Failed to install crontab", details=result.stderr.strip())
        os.makedirs(self.config.paths.log_dir, exist_ok=True)
        logger.info("Installed %s vaultdr cron jobs", len(self.jobs()))
        return content

"""Backup and rehearsal notifications."""

import logging
import os
import platform
import subprocess
from datetime import datetime
from typing import Any, Dict

from vaultdr.config.settings import DRConfig
from vaultdr.templates import render_template

logger = logging.getLogger(__name__)

SUBJECTS = {
    "backup_success": "Full backup completed",
    "backup_partial": "Full backup completed without remote copy",
    "backup_failed": "Full backup FAILED",
    "db_backup_success": "Database backup completed",
    "db_backup_partial": "Database backup completed without remote copy",
    "db_backup_failed": "Database backup FAILED",
    "dr_test_success": "DR rehearsal passed",
    "dr_test_warning": "DR rehearsal passed with warnings",
    "dr_test_failure": "DR rehearsal FAILED",
}


def event_level(event: str) -> int:
    if event.endswith(("_failed", "_failure")):
        return logging.ERROR
    if event.endswith(("_partial", "_warning")):
        return logging.WARNING
    return logging.INFO


class Notifier:
    """Logs alert-worthy events and mails them when a recipient is configured.

    Delivery problems never change the outcome of the operation that raised
    the event.
    """

    def __init__(self, config: DRConfig, verbose: bool = False):
        self.config = config.notifications
        self.verbose = verbose

    def render(self, event: str, data: Dict[str, Any]) -> str:
        return render_template(
            "notification.txt.j2",
            sender=self.config.sender,
            recipient=self.config.email or "",
            subject=SUBJECTS.get(event, event),
            hostname=platform.node(),
            timestamp=datetime.now().isoformat(timespec="seconds"),
            data=data,
        )

    def notify(self, event: str, data: Dict[str, Any]) -> bool:
        """
        Record an event and deliver it.

        Args:
            event: Event name, e.g. backup_success or dr_test_failure
            data: Values describing the event

        Returns:
            bool: True when mail was handed to sendmail
        """
        summary = ", ".join(f"{k}={v}" for k, v in data.items() if not isinstance(v, (dict, list)))
        logger.log(event_level(event), "%s: %s", SUBJECTS.get(event, event), summary)

        if not self.config.email:
            return False

        if not os.path.exists(self.config.sendmail_path):
            logger.warning("Cannot send notification: %s not found", self.config.sendmail_path)
            return False

        message = self.render(event, data)
        try:
            result = subprocess.run(
                [self.config.sendmail_path, "-t"],
                input=message,
                capture_output=True,
                text=True,
                timeout=60,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning("Notification delivery failed: %s", e)
            return False

        if result.returncode != 0:
            logger.warning("sendmail exited with %s: %s", result.returncode, result.stderr.strip())
            return False

        logger.debug("Notification %s sent to %s", event, self.config.email)
        return True

"""Tests for notifications."""

import logging
import os
import subprocess
from dataclasses import replace
from unittest.mock import patch

from vaultdr.config.manager import ConfigManager
from vaultdr.monitoring.alerts import Notifier, event_level


class TestNotifier:
    """Test event logging and mail delivery."""

    def test_event_levels(self):
        assert event_level("backup_failed") == logging.ERROR
        assert event_level("dr_test_failure") == logging.ERROR
        assert event_level("backup_partial") == logging.WARNING
        assert event_level("dr_test_warning") == logging.WARNING
        assert event_level("backup_success") == logging.INFO

    def test_without_recipient_only_logs(self, dr_config, caplog):
        with caplog.at_level(logging.INFO, logger="vaultdr.monitoring.alerts"):
            delivered = Notifier(dr_config).notify("backup_success", {"archive": "a.tar.gz"})

        assert delivered is False
        assert "Full backup completed: archive=a.tar.gz" in caplog.text

    def test_render(self, sample_project):
        config = ConfigManager(project_root=sample_project, environ={"ALERT_EMAIL": "ops@example.com"}).load()

        message = Notifier(config).render(
            "dr_test_warning", {"result": "WARNING", "warnings": ["users and ciphers tables are empty"]}
        )

        assert "To: ops@example.com" in message
        assert "Subject: [vaultdr] DR rehearsal passed with warnings" in message
        assert "result: WARNING" in message
        assert "  - users and ciphers tables are empty" in message

    def test_sendmail_delivery(self, sample_project, temp_directory):
        sendmail = os.path.join(temp_directory, "sendmail")
        with open(sendmail, "w", encoding="utf-8") as f:
            f.write("#!/bin/sh\n")
        config = ConfigManager(project_root=sample_project, environ={"ALERT_EMAIL": "ops@example.com"}).load()
        notifier = Notifier(config)
        notifier.config = replace(notifier.config, sendmail_path=sendmail)

        with patch("vaultdr.monitoring.alerts.subprocess.run", return_value=subprocess.CompletedProcess([], 0, "", "")) as mock_run:
            delivered = notifier.notify("backup_failed", {"stage": "DATABASE"})

        assert delivered is True
        assert mock_run.call_args[0][0] == [sendmail, "-t"]
        assert "Full backup FAILED" in mock_run.call_args[1]["input"]

    def test_delivery_failure_is_not_raised(self, sample_project, temp_directory):
        config = ConfigManager(project_root=sample_project, environ={"ALERT_EMAIL": "ops@example.com"}).load()
        notifier = Notifier(config)
        notifier.config = replace(notifier.config, sendmail_path=temp_directory)

        with patch("vaultdr.monitoring.alerts.subprocess.run", side_effect=OSError("exec format error")):
            assert notifier.notify("backup_success", {}) is False

"""Bare-metal rebuild: prepare a fresh host, restore onto it and bring the service up."""

import logging
import os
import platform
import shutil
import subprocess
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import click
import requests
from tenacity import Retrying, retry_if_exception_type, stop_after_delay, wait_fixed

from vaultdr.config.settings import DRConfig
from vaultdr.containers.manager import ContainerManager
from vaultdr.utils.errors import PreconditionError, TransientIOError

from .models import RestorePlan
from .recovery import RecoveryManager

logger = logging.getLogger(__name__)

OS_RELEASE = "/etc/os-release"
GIB = 1024 ** 3


@dataclass
class RebuildOutcome:
    plan: Optional[RestorePlan] = None
    advisories: List[str] = field(default_factory=list)
    services_started: bool = False
    healthy: bool = False
    health_detail: str = ""

    @property
    def exit_code(self) -> int:
        if self.plan is None or not self.plan.completed:
            return 2
        if not self.healthy or self.advisories or self.plan.advisories:
            return 1
        return 0


def probe_health(url: str, timeout_seconds: float, interval_seconds: float = 5) -> Tuple[bool, str]:
    """
    Poll a health endpoint until it answers 200 or the deadline passes.

    Returns:
        Tuple[bool, str]: Whether the service is healthy and a short detail
    """

    def _probe() -> str:
        try:
            response = requests.get(url, timeout=5)
        except requests.exceptions.RequestException as e:
            raise TransientIOError(f"{url} unreachable", details=str(e)) from e
        if response.status_code != 200:
            raise TransientIOError(f"{url} returned {response.status_code}")
        return f"{url} returned 200"

    retryer = Retrying(
        stop=stop_after_delay(timeout_seconds),
        wait=wait_fixed(interval_seconds),
        retry=retry_if_exception_type(TransientIOError),
        reraise=True,
    )
    try:
        return True, retryer(_probe)
    except TransientIOError as e:
        return False, e.message


class RebuildCoordinator:
    """Drives a rebuild onto new hardware from a full backup archive."""

    def __init__(
        self,
        config: DRConfig,
        containers: Optional[ContainerManager] = None,
        verbose: bool = False,
    ):
        self.config = config
        self.verbose = verbose
        self.containers = containers or ContainerManager(verbose=verbose)
        self.recovery = RecoveryManager(config, containers=self.containers, verbose=verbose)

    def check_environment(self) -> List[str]:
        """
        Compare this host with what the deployment expects.

        Returns:
            List[str]: Advisories; none of these stop the rebuild
        """
        advisories = []
        rebuild = self.config.rebuild

        if platform.system() != "Linux":
            advisories.append(f"Host OS is {platform.system()}, expected Linux")
        elif not self._is_ubuntu():
            advisories.append("Host is not Ubuntu; provisioning scripts may need changes")

        machine = platform.machine().lower()
        if machine not in rebuild.expected_arch:
            advisories.append(f"Architecture is {machine}, expected {' or '.join(rebuild.expected_arch)}")

        ram = self._total_memory()
        if ram is None:
            advisories.append("Could not determine installed memory")
        elif ram < rebuild.min_ram_gb * GIB:
            advisories.append(f"{ram / GIB:.1f} GB RAM available, {rebuild.min_ram_gb} GB recommended")

        free = shutil.disk_usage(self._existing_parent(self.config.paths.project_root)).free
        if free < rebuild.min_disk_gb * GIB:
            advisories.append(f"{free / GIB:.1f} GB free disk, {rebuild.min_disk_gb} GB recommended")

        for advisory in advisories:
            logger.warning("Environment: %s", advisory)
        return advisories

    def rebuild(self, archive_path: str, interactive: bool = True) -> RebuildOutcome:
        """
        Rebuild the deployment from an archive.

        Args:
            archive_path: Full backup archive
            interactive: Ask for DNS cutover confirmation before starting services

        Returns:
            RebuildOutcome: Restore plan, advisories and health result

        Raises:
            PreconditionError: If provisioning cannot run or the archive is missing
        """
        outcome = RebuildOutcome()
        outcome.advisories.extend(self.check_environment())

        self._provision()
        for path in (
            self.config.paths.data_dir,
            self.config.paths.backup_dir,
            self.config.paths.db_backup_dir,
            self.config.paths.log_dir,
        ):
            os.makedirs(path, exist_ok=True)

        outcome.plan = self.recovery.restore(archive_path, allow_running=False)
        if not outcome.plan.completed:
            logger.error("Restore did not complete; services were not started")
            return outcome

        if interactive:
            click.echo("\nUpdate DNS records so the service domain points at this host.")
            if not click.confirm("Has the DNS/network cutover been done?", default=True):
                outcome.advisories.append("Network cutover not confirmed; clients may still reach the old host")

        outcome.services_started = self._start_services(outcome)
        if not outcome.services_started:
            outcome.health_detail = "services not started"
            return outcome

        rebuild = self.config.rebuild
        logger.info("Waiting up to %ss for %s", rebuild.health_timeout_seconds, rebuild.health_url)
        outcome.healthy, outcome.health_detail = probe_health(rebuild.health_url, rebuild.health_timeout_seconds)
        if not outcome.healthy:
            logger.error("Health probe failed: %s", outcome.health_detail)
        return outcome

    def _provision(self) -> None:
        if shutil.which("docker"):
            return

        script = self.config.resolve(self.config.rebuild.setup_script)
        if not os.path.isfile(script):
            raise PreconditionError(
                "Docker is not installed and no provisioning script was found",
                details=f"Expected {script}",
                suggestions=["Install Docker manually", "Restore the project checkout before rebuilding"],
            )

        logger.info("Docker not found, running %s", os.path.basename(script))
        result = subprocess.run(["bash", script], cwd=self.config.paths.project_root, capture_output=True, text=True)
        if result.returncode != 0:
            raise PreconditionError(
                f"Provisioning script {os.path.basename(script)} failed",
                details=result.stderr.strip() or result.stdout.strip(),
            )

    def _start_services(self, outcome: RebuildOutcome) -> bool:
        script = self.config.resolve(self.config.rebuild.startup_script)
        if os.path.isfile(script):
            command = ["bash", script]
        else:
            command = ["docker", "compose", "up", "-d"]

        logger.info("Starting services: %s", " ".join(command))
        try:
            result = subprocess.run(command, cwd=self.config.paths.project_root, capture_output=True, text=True)
        except FileNotFoundError as e:
            outcome.advisories.append(f"Could not start services: {e}")
            return False
        if result.returncode != 0:
            outcome.advisories.append(f"Service start failed: {(result.stderr or result.stdout).strip()}")
            return False
        return True

    def _is_ubuntu(self) -> bool:
        try:
            with open(OS_RELEASE, encoding="utf-8") as f:
                return "ubuntu" in f.read().lower()
        except OSError:
            return False

    def _total_memory(self) -> Optional[int]:
        try:
            return os.sysconf("SC_PAGE_SIZE") * os.sysconf("SC_PHYS_PAGES")
        except (ValueError, OSError, AttributeError):
            return None

    def _existing_parent(self, path: str) -> str:
        while not os.path.exists(path):
            parent = os.path.dirname(path)
            if parent == path:
                break
            path = parent
        return path

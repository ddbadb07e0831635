"""Docker container access for vaultdr."""

import io
import logging
import os
import tarfile
from typing import Any, List, Optional, Tuple

import docker
from docker.errors import APIError, DockerException, NotFound

from vaultdr.utils.errors import DockerError, create_error_suggestions

logger = logging.getLogger(__name__)

COMPOSE_SERVICE_LABEL = "com.docker.compose.service"


class ContainerManager:
    """Locates and drives the deployment's service containers."""

    def __init__(self, verbose: bool = False):
        """
        Initialize container manager.

        Args:
            verbose: Whether to enable verbose output
        """
        self.verbose = verbose
        self._client = None

    @property
    def client(self) -> Any:
        """Get Docker client, creating it if necessary."""
        if self._client is None:
            try:
                client = docker.from_env()
                client.ping()
            except DockerException as e:
                raise DockerError(
                    f"Cannot connect to Docker daemon: {e}",
                    suggestions=create_error_suggestions("docker_not_running"),
                ) from e
            self._client = client

        return self._client

    def is_available(self) -> bool:
        """Check whether the Docker daemon is reachable."""
        try:
            self.client
        except DockerError as e:
            logger.debug("Docker unavailable: %s", e.message)
            return False
        return True

    def find_service_container(self, service: str, running_only: bool = True) -> Optional[Any]:
        """
        Find a container by compose service label, then by name.

        Args:
            service: Compose service or container name
            running_only: Ignore stopped containers

        Returns:
            Container or None
        """
        try:
            matches = self.client.containers.list(
                all=not running_only, filters={"label": f"{COMPOSE_SERVICE_LABEL}={service}"}
            )
            if matches:
                return matches[0]
            try:
                container = self.client.containers.get(service)
            except NotFound:
                return None
            if running_only and container.status != "running":
                return None
            return container
        except APIError as e:
            raise DockerError(f"Failed to look up container '{service}': {e}") from e

    def is_running(self, service: str) -> bool:
        return self.find_service_container(service, running_only=True) is not None

    def exec_in_service(
        self,
        service: str,
        command: List[str],
        output_path: Optional[str] = None,
    ) -> Tuple[int, bytes]:
        """
        Run a command inside a running service container.

        Args:
            service: Compose service or container name
            command: Command and arguments
            output_path: When given, stdout is streamed into this file

        Returns:
            Tuple[int, bytes]: Exit code and stderr (plus stdout when not streamed)

        Raises:
            DockerError: If the container is not running or the exec fails to start
        """
        container = self.find_service_container(service)
        if container is None:
            raise DockerError(f"Service container '{service}' is not running")

        api = self.client.api
        try:
            exec_id = api.exec_create(container.id, command)["Id"]
            chunks = api.exec_start(exec_id, stream=True, demux=True)
            captured = []
            if output_path:
                with open(output_path, "wb") as out:
                    for stdout, stderr in chunks:
                        if stdout:
                            out.write(stdout)
                        if stderr:
                            captured.append(stderr)
            else:
                for stdout, stderr in chunks:
                    captured.extend(part for part in (stdout, stderr) if part)
            exit_code = api.exec_inspect(exec_id).get("ExitCode")
        except APIError as e:
            raise DockerError(f"Command failed to start in '{service}': {e}") from e

        logger.debug("exec in %s: %s -> %s", service, " ".join(command), exit_code)
        return (exit_code if exit_code is not None else -1), b"".join(captured)

    def run_oneoff(
        self,
        service: str,
        command: List[str],
        files: Optional[List[str]] = None,
        files_dir: str = "/tmp",
        timeout: int = 3600,
    ) -> Tuple[int, bytes]:
        """
        Run a throwaway container from a service's image sharing its volumes.

        Works while the service itself is stopped.

        Args:
            service: Compose service whose image and volumes are used
            command: Command and arguments (the first element is the entrypoint)
            files: Local files copied into files_dir before start
            files_dir: Destination directory inside the container
            timeout: Seconds to wait for completion

        Returns:
            Tuple[int, bytes]: Exit code and combined logs
        """
        app = self.find_service_container(service, running_only=False)
        if app is None:
            raise DockerError(f"Service container '{service}' not found")

        try:
            container = self.client.containers.create(
                app.image.id,
                entrypoint=[command[0]],
                command=command[1:],
                volumes_from=[app.id],
                user="0",
                detach=True,
            )
        except APIError as e:
            raise DockerError(f"Failed to create one-off container for '{service}': {e}") from e

        try:
            for path in files or []:
                buffer = io.BytesIO()
                with tarfile.open(fileobj=buffer, mode="w") as tar:
                    tar.add(path, arcname=os.path.basename(path))
                container.put_archive(files_dir, buffer.getvalue())
            container.start()
            result = container.wait(timeout=timeout)
            logs = container.logs(stdout=True, stderr=True)
        except APIError as e:
            raise DockerError(f"One-off container for '{service}' failed: {e}") from e
        finally:
            try:
                container.remove(force=True)
            except APIError as e:
                logger.warning("Could not remove one-off container: %s", e)

        return result.get("StatusCode", -1), logs

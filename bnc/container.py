import asyncio
import os
from typing import Dict, Optional

import docker
import yaml

from bnc.config import log
from bnc.fabric.exceptions import ContainerRuntimeError
from bnc.fabric.topology import Engine


class ContainerEngine:
    """Container runtime capability used by the orchestrator"""

    async def does_container_exist(self, name: str) -> bool:
        raise NotImplementedError

    async def compose_one(self, service_name: str, cwd: str, config_file: str):
        raise NotImplementedError

    async def stop_container(self, name: str, force: bool = False) -> bool:
        raise NotImplementedError

    async def remove_container(self, name: str) -> bool:
        raise NotImplementedError

    async def remove_image(self, name: str) -> bool:
        raise NotImplementedError

    async def create_network(self, name: str):
        raise NotImplementedError


def service_run_settings(service_name: str, service: Dict) -> Dict:
    """ Translate a compose service into the settings of `containers.run`.

    :param service_name: name of the service, used when container_name is missing
    :param service: the service section of a compose descriptor
    """
    container_settings = {
        "image": service["image"],
        "name": service.get("container_name", service_name),
        "detach": True,
    }
    if service.get("command"):
        container_settings["command"] = service["command"]
    if service.get("environment"):
        container_settings["environment"] = service["environment"]
    if service.get("volumes"):
        container_settings["volumes"] = service["volumes"]
    if service.get("working_dir"):
        container_settings["working_dir"] = service["working_dir"]
    if service.get("ports"):
        # "host:container" -> {container: host}
        ports = {}
        for binding in service["ports"]:
            host, _, container = str(binding).rpartition(":")
            ports[int(container)] = int(host or container)
        container_settings["ports"] = ports
    if service.get("extra_hosts"):
        container_settings["extra_hosts"] = dict(h.split(":", 1) for h in service["extra_hosts"])
    if service.get("networks"):
        container_settings["network"] = list(service["networks"])[0]
    return container_settings


class DockerEngine(ContainerEngine):
    """Container engine backed by a docker daemon, local when `url` is None.
    Compose descriptors are read and run service by service with the docker SDK."""

    def __init__(self, url: str = None):
        self.url = url
        self._client = None

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            try:
                self._client = docker.DockerClient(base_url=self.url) if self.url else docker.from_env()
            except docker.errors.DockerException as e:
                raise ContainerRuntimeError(f"Cannot reach the docker daemon {self.url or '(local)'}: {e}") from e
        return self._client

    def _get(self, name):
        try:
            return self.client.containers.get(name)
        except docker.errors.NotFound:
            return None

    async def _run(self, fn, *args, **kwargs):
        # The docker SDK is blocking
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except (docker.errors.DockerException, OSError) as e:
            raise ContainerRuntimeError(str(e)) from e

    async def does_container_exist(self, name):
        container = await self._run(self._get, name)
        return container is not None and container.status == "running"

    def _compose_one(self, service_name, cwd, config_file):
        with open(os.path.join(cwd, config_file), "r") as f:
            compose = yaml.safe_load(f)
        service = (compose.get("services") or {}).get(service_name)
        if service is None:
            raise ContainerRuntimeError(f"Service {service_name} is not defined in {config_file}")

        container_settings = service_run_settings(service_name, service)
        if "network" in container_settings:
            self._create_network(container_settings["network"])

        # A stopped container with the same name would make the run fail
        previous = self._get(container_settings["name"])
        if previous is not None:
            log.debug(f"DockerEngine: removing previous container {previous.name} ({previous.status})")
            previous.remove(force=True)

        log.debug("Starting container with settings: {}".format(container_settings))
        self.client.containers.run(**container_settings)

    async def compose_one(self, service_name, cwd, config_file):
        await self._run(self._compose_one, service_name, cwd, config_file)
        log.info(f"DockerEngine: service {service_name} started")

    def _stop(self, name, force):
        container = self._get(name)
        if container is None:
            return False
        if force:
            container.kill()
        else:
            container.stop()
        return True

    async def stop_container(self, name, force=False):
        return await self._run(self._stop, name, force)

    def _remove(self, name):
        container = self._get(name)
        if container is None:
            return False
        container.remove(force=True)
        return True

    async def remove_container(self, name):
        return await self._run(self._remove, name)

    def _remove_image(self, name):
        try:
            self.client.images.remove(name, force=True)
        except docker.errors.ImageNotFound:
            return False
        return True

    async def remove_image(self, name):
        return await self._run(self._remove_image, name)

    def _create_network(self, name):
        # Check if the network exists
        try:
            self.client.networks.get(name)
        except docker.errors.NotFound:
            log.info(f"DockerEngine: creating network {name}")
            self.client.networks.create(name, driver="bridge")

    async def create_network(self, name):
        await self._run(self._create_network, name)


_engines: Dict[Optional[str], DockerEngine] = {}


def docker_engine(engine: Optional[Engine] = None) -> DockerEngine:
    """One DockerEngine per daemon, the local one when `engine` is None"""
    url = engine.url if engine is not None else None
    if url not in _engines:
        _engines[url] = DockerEngine(url)
    return _engines[url]

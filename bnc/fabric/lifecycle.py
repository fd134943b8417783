import asyncio
import functools
import os
import sys
from typing import Callable, List, Optional

from bnc.config import (FABRIC_CA_IMAGE, FABRIC_ORDERER_IMAGE, FABRIC_PEER_IMAGE,
                        log)
from bnc.container import ContainerEngine, docker_engine
from bnc.fabric import descriptors, msp
from bnc.fabric.exceptions import (ContainerNotReady, ContainerRuntimeError,
                                   OwnershipError)
from bnc.fabric.result import Result
from bnc.fabric.retry import RetryPolicy
from bnc.fabric.topology import Engine, Network, Orderer, Organization, Peer


class OwnershipHook:
    """Runs once a CA container produced its crypto material, so that the
    current user can read the files the container wrote"""

    async def __call__(self, path: str):
        raise NotImplementedError


class NoopOwnershipHook(OwnershipHook):
    async def __call__(self, path):
        log.debug(f"OwnershipHook: leaving ownership of {path} untouched")


class ChownOwnershipHook(OwnershipHook):
    """Hands `path` back to uid:gid with `chown -R`, through sudo unless already root"""

    def __init__(self, uid: int = None, gid: int = None, use_sudo: bool = True):
        self.uid = os.getuid() if uid is None else uid
        self.gid = os.getgid() if gid is None else gid
        self.use_sudo = use_sudo

    def command(self, path: str) -> List[str]:
        cmd = ["chown", "-R", f"{self.uid}:{self.gid}", path]
        if self.use_sudo:
            # -n: fail instead of prompting for a password
            cmd = ["sudo", "-n"] + cmd
        return cmd

    async def __call__(self, path):
        cmd = self.command(path)
        log.debug(f"OwnershipHook: running {' '.join(cmd)}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE)
            _, stderr = await proc.communicate()
        except OSError as e:
            raise OwnershipError(f"Cannot change ownership of {path}: {e}") from e
        if proc.returncode != 0:
            raise OwnershipError(f"Cannot change ownership of {path}: {stderr.decode().strip()}")


def ownership_hook_for_platform(platform: str = sys.platform) -> OwnershipHook:
    """Docker Desktop (macOS, Windows) maps file ownership itself, a Linux
    daemon writes the files as the container user"""
    if platform.startswith("linux"):
        return ChownOwnershipHook(use_sudo=os.geteuid() != 0)
    return NoopOwnershipHook()


class ContainerOrchestrator:
    """Starts and stops the containers of a network.

    :param engine_factory: returns the container engine hosting a node, given
        the topology Engine the node is bound to (None for the local one)
    :param retry_policy: readiness polling of the CA containers
    :param ownership_hook: runs on the CA home once the CA is up
    """

    def __init__(
        self,
            network: Network,
            engine_factory: Callable[[Optional[Engine]], ContainerEngine] = docker_engine,
            retry_policy: RetryPolicy = None,
            ownership_hook: OwnershipHook = None,
    ):
        self.network = network
        self.engine_factory = engine_factory
        self.retry_policy = retry_policy or RetryPolicy()
        self.ownership_hook = ownership_hook or ownership_hook_for_platform()
        self.root = network.options.network_config_path
        self.compose_dir = msp.docker_compose_path(self.root)

    def _engine(self, org: Organization, engine_name: str = None) -> ContainerEngine:
        return self.engine_factory(org.get_engine(engine_name) if engine_name else None)

    @staticmethod
    async def _exists(engine: ContainerEngine, name: str) -> bool:
        try:
            return await engine.does_container_exist(name)
        except ContainerRuntimeError as e:
            log.warning(f"ContainerOrchestrator: cannot check container {name}, assuming it is not running: {e}")
            return False

    async def start_ca(self, org: Organization) -> Result:
        """Start the CA container of the organization, unless it already runs"""
        name = org.ca_name
        engine = self._engine(org, org.ca.options.engine_name)
        if await self._exists(engine, name):
            log.info(f"ContainerOrchestrator: CA {name} container is already running")
            return Result.success(name)

        log.info(f"ContainerOrchestrator: Starting CA {name}...")
        try:
            file_name = descriptors.ca_compose_file(org)
            descriptors.save(descriptors.ca_compose(self.network, org), self.compose_dir, file_name)
            await engine.compose_one(name, self.compose_dir, file_name)
        except (ContainerRuntimeError, OSError) as e:
            log.error(f"ContainerOrchestrator: CA {name} could not be started: {e}")
            return Result.failure(ContainerRuntimeError(f"CA {name} could not be started: {e}"))

        # Check the container is running
        if not await self.retry_policy.poll(functools.partial(self._exists, engine, name)):
            log.error(f"ContainerOrchestrator: CA {name} is still not running, giving up")
            return Result.failure(ContainerNotReady(f"CA {name} did not start"))
        log.info(f"ContainerOrchestrator: CA {name} running")

        ca_home = msp.ca_home_path(self.root, org)
        try:
            await self.ownership_hook(ca_home)
        except OwnershipError as e:
            log.error(f"ContainerOrchestrator: {e}")
            return Result.failure(e)
        org.ca.tls_root_cert = msp.ca_tls_cert_path(self.root, org)
        log.debug(f"ContainerOrchestrator: ownership of {ca_home} updated")
        return Result.success(name)

    async def stop_ca(self, org: Organization) -> Result:
        name = org.ca_name
        engine = self._engine(org, org.ca.options.engine_name)
        if not await self._exists(engine, name):
            log.info(f"ContainerOrchestrator: CA {name} container is not running")
            return Result.success(name)
        return await self._stop(engine, name)

    async def _stop(self, engine: ContainerEngine, name: str) -> Result:
        try:
            stopped = await engine.stop_container(name, True)
        except ContainerRuntimeError as e:
            return Result.failure(e)
        if not stopped:
            return Result.failure(ContainerRuntimeError(f"Container {name} could not be stopped"))
        log.info(f"ContainerOrchestrator: container {name} stopped")
        return Result.success(name)

    async def _start_node(self, org: Organization, engine_name: str, service_name: str,
                          file_name: str, content: str) -> Result:
        engine = self._engine(org, engine_name)
        if await self._exists(engine, service_name):
            log.info(f"ContainerOrchestrator: {service_name} is already running")
            return Result.success(service_name)

        log.info(f"ContainerOrchestrator: Starting {service_name}...")
        try:
            descriptors.save(content, self.compose_dir, file_name)
            await engine.create_network(self.network.options.compose_network)
            await engine.compose_one(service_name, self.compose_dir, file_name)
        except (ContainerRuntimeError, OSError) as e:
            log.error(f"ContainerOrchestrator: {service_name} could not be started: {e}")
            return Result.failure(ContainerRuntimeError(f"{service_name} could not be started: {e}"))
        log.info(f"ContainerOrchestrator: service {service_name} started successfully")
        return Result.success(service_name)

    async def start_orderer(self, org: Organization, orderer: Orderer) -> Result:
        return await self._start_node(
            org, orderer.options.engine_name, org.orderer_service_name(orderer),
            descriptors.orderer_compose_file(org), descriptors.orderer_compose(self.network, org))

    async def start_peer(self, org: Organization, peer: Peer) -> Result:
        return await self._start_node(
            org, peer.options.engine_name, org.peer_full_name(peer),
            descriptors.peer_compose_file(org), descriptors.peer_compose(self.network, org))

    def _organizations(self, org: Organization = None) -> List[Organization]:
        return [org] if org is not None else self.network.organizations

    async def start_orderers(self, org: Organization = None) -> Result:
        """Start the orderers one after the other, every organization when `org` is None"""
        results = []
        for o in self._organizations(org):
            for orderer in o.orderers:
                results.append(await self.start_orderer(o, orderer))
        return _gather_results(results, "orderers")

    async def start_peers(self, org: Organization = None) -> Result:
        results = []
        for o in self._organizations(org):
            for peer in o.peers:
                results.append(await self.start_peer(o, peer))
        return _gather_results(results, "peers")

    async def stop_network(self) -> Result:
        """Stop and remove the peers, orderers and CAs of every organization.
        Exited containers are removed too, missing ones are skipped."""
        results = []
        for org in self.network.organizations:
            nodes = [(org.peer_full_name(p), p.options.engine_name) for p in org.peers]
            nodes += [(org.orderer_service_name(o), o.options.engine_name) for o in org.orderers]
            nodes.append((org.ca_name, org.ca.options.engine_name))
            for name, engine_name in nodes:
                engine = self._engine(org, engine_name)
                running = await self._exists(engine, name)
                if running:
                    stopped = await self._stop(engine, name)
                    if not stopped:
                        results.append(stopped)
                        continue
                try:
                    removed = await engine.remove_container(name)
                except ContainerRuntimeError as e:
                    results.append(Result.failure(e))
                    continue
                if running or removed:
                    log.info(f"ContainerOrchestrator: container {name} removed")
                    results.append(Result.success(name))
        return _gather_results(results, "containers")

    def _images(self) -> List[str]:
        options = self.network.options
        return [f"{FABRIC_CA_IMAGE}:{options.hyperledger_ca_version}",
                f"{FABRIC_PEER_IMAGE}:{options.hyperledger_version}",
                f"{FABRIC_ORDERER_IMAGE}:{options.hyperledger_version}"]

    async def remove_images(self) -> Result:
        """Remove the fabric images from every engine the network uses"""
        engines = {}
        for org in self.network.organizations:
            names = [org.ca.options.engine_name]
            names += [p.options.engine_name for p in org.peers]
            names += [o.options.engine_name for o in org.orderers]
            for engine_name in names:
                engine = self._engine(org, engine_name)
                engines[id(engine)] = engine

        results = []
        for engine in engines.values():
            for image in self._images():
                try:
                    if await engine.remove_image(image):
                        log.info(f"ContainerOrchestrator: image {image} removed")
                    results.append(Result.success(image))
                except ContainerRuntimeError as e:
                    log.error(f"ContainerOrchestrator: image {image} could not be removed: {e}")
                    results.append(Result.failure(e))
        return _gather_results(results, "images")


def _gather_results(results: List[Result], kind: str) -> Result:
    failed = [r.error for r in results if not r]
    if failed:
        return Result.failure(ContainerRuntimeError(
            f"{len(failed)} {kind} failed: " + "; ".join(str(e) for e in failed)))
    return Result.success([r.value for r in results])

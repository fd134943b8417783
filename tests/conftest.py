"""
Pytest configuration, fixtures and in-process fakes of the external collaborators.
"""
import os

import pytest

from bnc.fabric.ca_client import CaClient, Enrollment
from bnc.fabric.exceptions import ContainerRuntimeError, OwnershipError
from bnc.fabric.ledger import ChannelHandle, LedgerClient, ProposalResponse
from bnc.fabric.lifecycle import OwnershipHook
from bnc.fabric.retry import RetryPolicy
from bnc.fabric.topology import (CertificateAuthority, Network, NetworkOptions,
                                 NodeOptions, Orderer, Organization, Peer)
from bnc.fabric.wallet import InMemoryWallet


class FakeCaClient(CaClient):
    """Records every call; `fail_on` holds the enrollment ids the CA refuses,
    `fail_enroll_on` the ones it registers but refuses to enroll"""

    def __init__(self, fail_on=None, fail_enroll_on=None):
        self.calls = []
        self.fail_on = set(fail_on or [])
        self.fail_enroll_on = set(fail_enroll_on or [])

    async def register(self, request, registrar):
        self.calls.append(("register", request.enrollment_id, request.role))
        if request.enrollment_id in self.fail_on:
            raise RuntimeError(f"register {request.enrollment_id} refused")
        return f"{request.enrollment_id}-secret"

    async def enroll(self, request):
        self.calls.append(("enroll", request.enrollment_id, request.profile))
        if request.enrollment_id in self.fail_on | self.fail_enroll_on:
            raise RuntimeError(f"enroll {request.enrollment_id} refused")
        # The CA generates the key only when no CSR is given
        key = None if request.csr else f"KEY {request.enrollment_id}".encode()
        return Enrollment(
            certificate=f"CERT {request.enrollment_id} {request.profile or 'default'}",
            key=key,
            root_certificate="ROOT CERT",
        )

    def enrolled(self):
        return [c[1] for c in self.calls if c[0] == "enroll"]


class FakeEngine:
    def __init__(self, ready=True, fail_compose=False, exists_error=False):
        self.running = set()
        # every container known to the engine, running or exited
        self.containers = set()
        self.calls = []
        self.ready = ready
        self.fail_compose = fail_compose
        self.exists_error = exists_error

    async def does_container_exist(self, name):
        self.calls.append(("exists", name))
        if self.exists_error:
            raise ContainerRuntimeError("daemon unreachable")
        return name in self.running

    async def compose_one(self, service_name, cwd, config_file):
        self.calls.append(("compose", service_name, config_file))
        if self.fail_compose:
            raise ContainerRuntimeError(f"cannot start {service_name}")
        assert os.path.exists(os.path.join(cwd, config_file))
        self.containers.add(service_name)
        if self.ready:
            self.running.add(service_name)

    async def stop_container(self, name, force=False):
        self.calls.append(("stop", name, force))
        if name not in self.running:
            return False
        self.running.discard(name)
        return True

    async def remove_container(self, name):
        self.calls.append(("remove", name))
        self.running.discard(name)
        if name not in self.containers:
            return False
        self.containers.discard(name)
        return True

    async def remove_image(self, name):
        self.calls.append(("rmi", name))
        return True

    async def create_network(self, name):
        self.calls.append(("network", name))

    def kinds(self):
        return [c[0] for c in self.calls]


class FakeOwnershipHook(OwnershipHook):
    def __init__(self, fail=False):
        self.paths = []
        self.fail = fail

    async def __call__(self, path):
        self.paths.append(path)
        if self.fail:
            raise OwnershipError(f"cannot chown {path}")


class FakeChannel(ChannelHandle):
    """`outcomes` maps a peer name to a status code or to an exception"""

    def __init__(self, outcomes=None, genesis_errors=0):
        self.outcomes = outcomes or {}
        self.genesis_errors = genesis_errors
        self.genesis_calls = 0
        self.join_requests = []
        self.closed = False

    async def get_genesis_block(self, request):
        self.genesis_calls += 1
        if self.genesis_calls <= self.genesis_errors:
            raise ConnectionError("orderer unavailable")
        return b"genesis"

    async def join_channel(self, request):
        self.join_requests.append(request)
        results = []
        for target in request["targets"]:
            outcome = self.outcomes.get(target, 200)
            if isinstance(outcome, BaseException):
                results.append(outcome)
            else:
                results.append(ProposalResponse(target, outcome))
        return results

    def close(self):
        self.closed = True


class FakeLedgerClient(LedgerClient):
    def __init__(self, create_response=None, create_error=None, channels=None):
        self.create_response = create_response if create_response is not None else {"status": "SUCCESS"}
        self.create_error = create_error
        self.channels = channels or {}
        self.create_requests = []
        self.signed = []

    def extract_channel_config(self, envelope):
        return b"config:" + envelope

    async def sign_channel_config(self, config):
        self.signed.append(config)
        return b"signature"

    async def create_channel(self, request):
        self.create_requests.append(request)
        if self.create_error is not None:
            raise self.create_error
        return self.create_response

    def get_channel(self, name):
        return self.channels.get(name)


def make_network(root, is_secure=False, n_orgs=1):
    organizations = []
    for i in range(1, n_orgs + 1):
        orderers = [Orderer("orderer0", NodeOptions(ports=[7050]))] if i == 1 else []
        organizations.append(Organization(
            name=f"org{i}",
            domain="example.com",
            ca=CertificateAuthority(),
            peers=[
                Peer("peer0", NodeOptions(ports=[7051 + (i - 1) * 2000])),
                Peer("peer1", NodeOptions(ports=[8051 + (i - 1) * 2000])),
            ],
            orderers=orderers,
            is_secure=is_secure,
        ))
    return Network(organizations, NetworkOptions(network_config_path=str(root)))


@pytest.fixture
def network(tmp_path):
    return make_network(tmp_path)


@pytest.fixture
def secure_network(tmp_path):
    return make_network(tmp_path, is_secure=True)


@pytest.fixture
def org(network):
    return network.organizations[0]


@pytest.fixture
def wallet():
    return InMemoryWallet()


@pytest.fixture
def ca_client():
    return FakeCaClient()


@pytest.fixture
def fast_retry():
    return RetryPolicy(attempts=2, delay=0)

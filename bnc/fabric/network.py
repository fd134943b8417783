from typing import Callable, Dict, Optional

from bnc.config import CHANNEL_JOIN_DELAY, MAX_ENROLLMENT_COUNT, log
from bnc.container import docker_engine
from bnc.fabric import descriptors, msp
from bnc.fabric.ca_client import CaClient, FabricCaClient, RegisterRequest
from bnc.fabric.certificates import OrgCertsGenerator
from bnc.fabric.channels import ChannelCoordinator, generate_channel_artifacts
from bnc.fabric.exceptions import IdentityNotFound, ProvisioningError
from bnc.fabric.lifecycle import ContainerOrchestrator, OwnershipHook
from bnc.fabric.membership import Membership
from bnc.fabric.result import Result
from bnc.fabric.retry import RetryPolicy
from bnc.fabric.topology import Network, Organization
from bnc.fabric.wallet import FileSystemWallet, Wallet


def default_ca_client(network: Network, org: Organization) -> CaClient:
    scheme = "https" if org.is_secure else "http"
    host = org.engine_host(org.ca.options.engine_name)
    tls_cert = msp.ca_tls_cert_path(network.options.network_config_path, org) if org.is_secure else None
    return FabricCaClient(f"{scheme}://{host}:{org.ca.options.port}", ca_name=org.ca_name, tls_cert_path=tls_cert)


def default_wallet(network: Network, org: Organization) -> Wallet:
    return FileSystemWallet(msp.wallet_path(network.options.network_config_path, org))


def _combine(results: Dict[str, Result], what: str) -> Result:
    """Success when every organization succeeded, the value maps full name to value"""
    failed = {name: r.error for name, r in results.items() if not r}
    if failed:
        error = ProvisioningError(f"{what} failed for " + "; ".join(f"{n}: {e}" for n, e in failed.items()))
        return Result.failure(error)
    return Result.success({name: r.value for name, r in results.items()})


class FabricNetwork:
    """Entry point of the provisioning: every step runs over all the
    organizations of the network, or the one given"""

    def __init__(
        self,
            network: Network,
            ca_client_factory: Callable[[Network, Organization], CaClient] = default_ca_client,
            wallet_factory: Callable[[Network, Organization], Wallet] = default_wallet,
            engine_factory=docker_engine,
            ledger_client_factory=None,
            retry_policy: RetryPolicy = None,
            ownership_hook: OwnershipHook = None,
            join_delay: float = CHANNEL_JOIN_DELAY,
    ):
        self.network = network
        self.ca_client_factory = ca_client_factory
        self.wallet_factory = wallet_factory
        self.root = network.options.network_config_path
        self.orchestrator = ContainerOrchestrator(network, engine_factory, retry_policy, ownership_hook)
        self.channels = ChannelCoordinator(network, ledger_client_factory, retry_policy, join_delay)

    def _organizations(self, org_name: str = None):
        if org_name is None:
            return self.network.organizations
        return [self.network.get_organization(org_name)]

    async def build_certificate(self, org_name: str = None) -> Result:
        results = {}
        for org in self._organizations(org_name):
            log.info(f"FabricNetwork: building certificates of {org.full_name}...")
            membership = Membership(self.ca_client_factory(self.network, org),
                                    org.ca.options.user, org.ca.options.password)
            generator = OrgCertsGenerator(self.network, org, membership, self.wallet_factory(self.network, org))
            results[org.full_name] = await generator.build_certificate()
        return _combine(results, "Certificate generation")

    async def start_org_ca(self, org_name: str = None) -> Result:
        results = {}
        for org in self._organizations(org_name):
            results[org.full_name] = await self.orchestrator.start_ca(org)
        return _combine(results, "CA start")

    async def stop_org_ca(self, org_name: str = None) -> Result:
        results = {}
        for org in self._organizations(org_name):
            results[org.full_name] = await self.orchestrator.stop_ca(org)
        return _combine(results, "CA stop")

    async def generate_channel_artifacts(self, channel_name: str) -> Result:
        return await generate_channel_artifacts(self.network, channel_name)

    async def start_nodes(self) -> Result:
        """Start the orderers, then the peers"""
        log.info("FabricNetwork: starting orderers...")
        orderers = await self.orchestrator.start_orderers()
        if not orderers:
            return orderers
        log.info("FabricNetwork: starting peers...")
        return await self.orchestrator.start_peers()

    def _declare_channel(self, channel_name: str):
        # The connection profiles list the channels an organization takes part in
        for org in self.network.organizations:
            descriptors.save_connection_profile(self.network, org, channel_name)

    async def create_channel(self, channel_name: str, channel_config_path: Optional[str] = None,
                             org_name: str = None) -> Result:
        """Create the channel on behalf of `org_name`, the first organization by default"""
        org = self.network.get_organization(org_name) if org_name else self.network.organizations[0]
        path = channel_config_path or descriptors.channel_tx_file(channel_name)
        result = await self.channels.create_channel(channel_name, path, org)
        if result:
            self._declare_channel(channel_name)
        return result

    async def join_channel(self, channel_name: str, org_name: str = None) -> Result:
        """Join every peer of each organization to the channel"""
        results = {}
        for org in self._organizations(org_name):
            if not org.peers:
                continue
            results[org.full_name] = await self.channels.join_channel(channel_name, org.peers, org)
        return _combine(results, "Channel join")

    async def teardown(self) -> Result:
        log.info("FabricNetwork: tearing down the network...")
        return await self.orchestrator.stop_network()

    async def remove_images(self) -> Result:
        log.info("FabricNetwork: removing the fabric images...")
        return await self.orchestrator.remove_images()

    def _organization(self, org_name: str = None) -> Organization:
        return self.network.get_organization(org_name) if org_name else self.network.organizations[0]

    async def enroll_identity(self, role: str, enrollment_id: str, secret: str, affiliation: str,
                              msp_id: str = None, org_name: str = None) -> Result:
        """Register and enroll a new identity with the CA of `org_name`, the
        first organization by default, and store it into its wallet.
        The registrar is enrolled first when the wallet lacks it."""
        org = self._organization(org_name)
        wallet = self.wallet_factory(self.network, org)
        membership = Membership(self.ca_client_factory(self.network, org), org.ca.options.user, org.ca.options.password)
        params = RegisterRequest(
            enrollment_id=enrollment_id,
            role=role,
            affiliation=affiliation,
            max_enrollments=MAX_ENROLLMENT_COUNT,
            enrollment_secret=secret,
        )
        try:
            await membership.enroll_admin(wallet, org.msp_id)
            await membership.add_user(wallet, params, msp_id or org.msp_id)
        except (ProvisioningError, OSError) as e:
            log.error(f"FabricNetwork: {enrollment_id} could not be enrolled: {e}")
            return Result.failure(e if isinstance(e, ProvisioningError) else ProvisioningError(str(e)))
        return Result.success(wallet.get(enrollment_id))

    def fetch_identity(self, enrollment_id: str, org_name: str = None) -> Result:
        org = self._organization(org_name)
        identity = self.wallet_factory(self.network, org).get(enrollment_id)
        if identity is None:
            return Result.failure(IdentityNotFound(f"{enrollment_id} is not in the wallet of {org.full_name}"))
        return Result.success(identity)

    def delete_identity(self, enrollment_id: str, org_name: str = None) -> Result:
        org = self._organization(org_name)
        wallet = self.wallet_factory(self.network, org)
        if not wallet.exists(enrollment_id):
            return Result.failure(IdentityNotFound(f"{enrollment_id} is not in the wallet of {org.full_name}"))
        wallet.remove(enrollment_id)
        log.info(f"FabricNetwork: {enrollment_id} removed from the wallet of {org.full_name}")
        return Result.success(enrollment_id)

    def list_identities(self, org_name: str = None) -> Result:
        org = self._organization(org_name)
        return Result.success(self.wallet_factory(self.network, org).list())

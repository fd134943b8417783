import os
from typing import Dict, Union

from bnc.config import MAX_ENROLLMENT_COUNT, log
from bnc.fabric import descriptors, msp
from bnc.fabric.ca_client import Enrollment, EnrollmentRequest, RegisterRequest
from bnc.fabric.csr import CsrRequest
from bnc.fabric.exceptions import (AlreadyEnrolledException, AlreadyExists,
                                   EnrollmentFailed, IdentityNotFound,
                                   ProvisioningError)
from bnc.fabric.membership import Membership
from bnc.fabric.result import Result
from bnc.fabric.topology import Network, Orderer, Organization, Peer
from bnc.fabric.wallet import IdentityState, Wallet


class OrgCertsGenerator:
    """Generates the keys and certificates of one organization: its admin,
    then every peer, then every orderer.

    Identities are issued by the organization CA through `membership` and kept
    in `wallet`; their material is written into the MSP layout under the
    network config path.
    """

    def __init__(self, network: Network, org: Organization, membership: Membership, wallet: Wallet):
        self.network = network
        self.org = org
        self.membership = membership
        self.wallet = wallet
        self.root = network.options.network_config_path
        self.states: Dict[str, IdentityState] = {}

    def create_msp_directories(self):
        """Create the folders of every MSP of the organization"""
        org = self.org
        os.makedirs(msp.tlsca_path(self.root, org), exist_ok=True)
        for peer in org.peers:
            msp.create_msp_folders(msp.peer_msp_path(self.root, org, peer))
            os.makedirs(msp.peer_tls_path(self.root, org, peer), exist_ok=True)
        for orderer in org.orderers:
            msp.create_msp_folders(msp.orderer_msp_path(self.root, org, orderer))
            os.makedirs(msp.orderer_tls_path(self.root, org, orderer), exist_ok=True)
        msp.create_msp_folders(msp.org_msp_path(self.root, org))
        msp.create_msp_folders(msp.admin_msp_path(self.root, org))

    async def build_certificate(self) -> Result:
        """Build all certificates of the organization.

        The value of a successful result maps each enrollment id to the state
        it reached. A failing admin aborts the organization; a failing peer or
        orderer is reported once its siblings have been provisioned.
        """
        org = self.org
        # the registrar is the bootstrap account of the CA, registered at startup
        states: Dict[str, IdentityState] = {self.membership.registrar_name: IdentityState.REGISTERED,
                                            org.admin_user: IdentityState.UNREGISTERED}
        for node in list(org.peers) + list(org.orderers):
            states[self._node_name(node)] = IdentityState.UNREGISTERED
        self.states = states
        try:
            descriptors.save_connection_profile(self.network, org)
            self.create_msp_directories()

            log.info(f"OrgCertsGenerator: enrolling the registrar of {org.ca_name}...")
            await self.membership.enroll_admin(self.wallet, org.msp_id)
            states[self.membership.registrar_name] = IdentityState.ENROLLED

            tls_ca_cert = None
            if org.is_secure:
                tls_ca_cert = msp.ca_tls_cert_path(self.root, org)
                msp.copy_file(tls_ca_cert, os.path.join(msp.tlsca_path(self.root, org), msp.tlsca_cert_file_name(org)))
                org.ca.tls_root_cert = tls_ca_cert

            log.info(f"OrgCertsGenerator: registering and enrolling the admin of {org.full_name}...")
            admin = await self._enroll_org_admin(states)
            msp.write_msp(msp.admin_msp_path(self.root, org), org, org.admin_user_full,
                          admin.certificate, admin.key, admin.root_certificate, tls_ca_cert=tls_ca_cert)
            msp.write_org_msp(self.root, org, admin.root_certificate, admin.certificate, tls_ca_cert)
            states[org.admin_user] = IdentityState.MATERIALIZED
        except (ProvisioningError, OSError) as e:
            log.error(f"OrgCertsGenerator: provisioning of {org.full_name} aborted: {e}")
            return Result.failure(e if isinstance(e, ProvisioningError) else ProvisioningError(str(e)))

        failures = {}
        nodes = [(p, msp.peer_msp_path(self.root, org, p), msp.peer_tls_path(self.root, org, p), "peer")
                 for p in org.peers]
        nodes += [(o, msp.orderer_msp_path(self.root, org, o), msp.orderer_tls_path(self.root, org, o), "orderer")
                  for o in org.orderers]
        for node, msp_path, tls_path, role in nodes:
            enrollment_id = self._node_name(node)
            try:
                await self._provision_node(node, role, admin, msp_path, tls_path, tls_ca_cert, states)
            except (ProvisioningError, OSError) as e:
                log.error(f"OrgCertsGenerator: error enrolling the {role} {enrollment_id}: {e}")
                failures[enrollment_id] = str(e)

        if failures:
            return Result.failure(EnrollmentFailed(
                f"Identities of {org.full_name} could not be provisioned: {', '.join(failures)}"))
        log.info(f"OrgCertsGenerator: certificates of {org.full_name} built")
        return Result.success(states)

    def _node_name(self, node: Union[Peer, Orderer]) -> str:
        if isinstance(node, Orderer):
            return self.org.orderer_service_name(node)
        return self.org.peer_full_name(node)

    async def _enroll_org_admin(self, states: Dict[str, IdentityState]) -> Enrollment:
        org = self.org
        params = RegisterRequest(
            enrollment_id=org.admin_user,
            enrollment_secret=org.admin_password,
            role="admin",
            max_enrollments=MAX_ENROLLMENT_COUNT,
        )
        try:
            response = await self.membership.add_user(self.wallet, params, org.msp_id, states=states)
            return response.enrollment
        except AlreadyExists:
            log.info(f"OrgCertsGenerator: admin {org.admin_user} found in the wallet, reusing it")
            states[org.admin_user] = IdentityState.ENROLLED

        # Rebuild the enrollment from the wallet and the root certificate on disk
        identity = self.wallet.get(org.admin_user)
        candidates = [
            os.path.join(msp.admin_msp_path(self.root, org), "cacerts", msp.ca_cert_file_name(org)),
            msp.ca_tls_cert_path(self.root, org),
        ]
        for path in candidates:
            if os.path.exists(path):
                with open(path, "r") as f:
                    return Enrollment(identity.certificate, identity.private_key, f.read())
        raise IdentityNotFound(f"No root certificate found on disk for {org.full_name}")

    async def _provision_node(self, node, role, admin: Enrollment, msp_path, tls_path, tls_ca_cert, states):
        org = self.org
        enrollment_id = self._node_name(node)
        csr = CsrRequest(san=enrollment_id, enrollment_id=enrollment_id)
        params = RegisterRequest(
            enrollment_id=enrollment_id,
            enrollment_secret=f"{node.name}pw",
            role=role,
            max_enrollments=MAX_ENROLLMENT_COUNT,
        )

        try:
            response = await self.membership.add_user(self.wallet, params, org.msp_id, csr, states)
            enrollment, secret = response.enrollment, response.secret
        except AlreadyExists:
            states[enrollment_id] = IdentityState.ENROLLED
            identity = self.wallet.get(enrollment_id)
            enrollment = Enrollment(identity.certificate, identity.private_key, admin.root_certificate)
            secret = None

        msp.write_msp(msp_path, org, enrollment_id, enrollment.certificate, enrollment.key,
                      admin.root_certificate, admin_certificate=admin.certificate, tls_ca_cert=tls_ca_cert)
        states[enrollment_id] = IdentityState.MATERIALIZED
        log.info(f"OrgCertsGenerator: {role} {enrollment_id} is enrolled successfully")

        if not org.is_secure:
            return
        try:
            tls = await self._enroll_node_tls(enrollment_id, secret, csr)
        except AlreadyEnrolledException:
            log.warning(f"OrgCertsGenerator: {role} {enrollment_id} found on the wallet, "
                        f"no secret available for tls, continue...")
            return
        msp.write_tls(tls_path, tls.root_certificate, tls.certificate, tls.key)
        log.info(f"OrgCertsGenerator: TLS material of {role} {enrollment_id} written")

    async def _enroll_node_tls(self, enrollment_id: str, secret: str, csr: CsrRequest) -> Enrollment:
        if not secret:
            raise AlreadyEnrolledException(f"Missing secret to enroll the tls profile of {enrollment_id}")
        request = EnrollmentRequest(enrollment_id=enrollment_id, enrollment_secret=secret, profile="tls")
        return await self.membership.enroll_tls(self.wallet, request, csr)

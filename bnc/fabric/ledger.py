import asyncio
import os
import uuid
from typing import Dict, List, Optional, Tuple

import yaml

from bnc.config import FABRIC_CFG_PATH, FABRIC_TOOLS_PEER, log
from bnc.fabric import descriptors, msp
from bnc.fabric.exceptions import LedgerError
from bnc.fabric.topology import Network, Orderer, Organization, Peer


class ProposalResponse:
    """Answer of one peer to a proposal, `status` follows HTTP codes"""

    def __init__(self, peer: str, status: int, message: str = ""):
        self.peer = peer
        self.status = status
        self.message = message

    def __repr__(self):
        return f"ProposalResponse({self.peer!r}, status={self.status})"


class ChannelHandle:
    """A channel as seen from one organization"""

    async def get_genesis_block(self, request: Dict) -> bytes:
        raise NotImplementedError

    async def join_channel(self, request: Dict) -> List:
        """One entry per target, in target order: a ProposalResponse or the
        exception raised while contacting that peer"""
        raise NotImplementedError

    def close(self):
        raise NotImplementedError


class LedgerClient:
    """Ledger capability of one organization, acting as its admin"""

    def new_transaction_id(self) -> str:
        return uuid.uuid4().hex

    def extract_channel_config(self, envelope: bytes) -> bytes:
        raise NotImplementedError

    async def sign_channel_config(self, config: bytes) -> bytes:
        raise NotImplementedError

    async def create_channel(self, request: Dict) -> Dict:
        raise NotImplementedError

    def get_channel(self, name: str) -> Optional[ChannelHandle]:
        raise NotImplementedError


async def run_tool(args: List[str], env: Dict[str, str] = None) -> Tuple[int, str, str]:
    """Run a fabric binary and return (exit code, stdout, stderr)"""
    log.debug(f"Running {' '.join(args)}")
    full_env = dict(os.environ)
    full_env.update(env or {})
    try:
        proc = await asyncio.create_subprocess_exec(
            *args, env=full_env, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE)
    except OSError as e:
        raise LedgerError(f"Cannot run {args[0]}: {e}") from e
    stdout, stderr = await proc.communicate()
    return proc.returncode, stdout.decode(), stderr.decode()


class PeerCliChannel(ChannelHandle):
    def __init__(self, client: "PeerCliLedgerClient", name: str):
        self.client = client
        self.name = name
        self.closed = False

    async def get_genesis_block(self, request):
        path = os.path.join(self.client.artifacts_dir, f"{self.name}_genesis.block")
        os.makedirs(self.client.artifacts_dir, exist_ok=True)
        args = [self.client.peer_bin, "channel", "fetch", "0", path, "-c", self.name]
        args += self.client.orderer_args()
        code, _, stderr = await run_tool(args, self.client.peer_env())
        if code != 0:
            raise LedgerError(f"Cannot fetch the genesis block of {self.name}: {stderr.strip()}")
        with open(path, "rb") as f:
            return f.read()

    async def _join_one(self, target: str, block_path: str) -> ProposalResponse:
        peer = self.client.find_peer(target)
        args = [self.client.peer_bin, "channel", "join", "-b", block_path]
        log.info(f"PeerCliLedgerClient: joining peer {target} to channel {self.name}")
        code, stdout, stderr = await run_tool(args, self.client.peer_env(peer))
        if code != 0:
            return ProposalResponse(target, 500, stderr.strip())
        return ProposalResponse(target, 200, stdout.strip())

    async def join_channel(self, request):
        block_path = os.path.join(self.client.artifacts_dir, f"{self.name}_join.block")
        with open(block_path, "wb") as f:
            f.write(request["block"])
        return await asyncio.gather(
            *[self._join_one(t, block_path) for t in request["targets"]], return_exceptions=True)

    def close(self):
        # The CLI opens no event stream, nothing else to release
        self.closed = True
        log.debug(f"PeerCliLedgerClient: channel {self.name} closed")


class PeerCliLedgerClient(LedgerClient):
    """Ledger client driving the `peer` binary with the organization admin MSP"""

    def __init__(self, network: Network, org: Organization, peer_bin: str = FABRIC_TOOLS_PEER,
                 cfg_path: str = FABRIC_CFG_PATH):
        self.network = network
        self.org = org
        self.peer_bin = peer_bin
        self.cfg_path = cfg_path
        self.root = network.options.network_config_path
        self.artifacts_dir = msp.artifacts_path(self.root)
        self.profile_path = descriptors.connection_profile_path(network, org)

    def _first_orderer(self) -> Tuple[Organization, Orderer]:
        for owner in self.network.organizations:
            if owner.orderers:
                return owner, owner.orderers[0]
        raise LedgerError("The network has no orderer")

    def orderer_args(self) -> List[str]:
        owner, orderer = self._first_orderer()
        name = owner.orderer_service_name(orderer)
        args = ["-o", f"{owner.engine_host(orderer.options.engine_name)}:{descriptors.node_port(owner, orderer)}"]
        if owner.is_secure:
            args += [
                "--tls",
                "--cafile", os.path.join(msp.orderer_tls_path(self.root, owner, orderer), "ca.crt"),
                "--ordererTLSHostnameOverride", name,
            ]
        return args

    def find_peer(self, name: str) -> Peer:
        for peer in self.org.peers:
            if name in (peer.name, self.org.peer_full_name(peer)):
                return peer
        raise LedgerError(f"Peer {name} is not part of {self.org.full_name}")

    def peer_env(self, peer: Peer = None) -> Dict[str, str]:
        """Environment of the peer CLI: admin MSP, targeting `peer` (first peer by default)"""
        org = self.org
        env = {
            "FABRIC_CFG_PATH": self.cfg_path,
            "CORE_PEER_MSPCONFIGPATH": msp.admin_msp_path(self.root, org),
            "CORE_PEER_LOCALMSPID": org.msp_id,
            "CORE_PEER_TLS_ENABLED": "true" if org.is_secure else "false",
        }
        if peer is None and org.peers:
            peer = org.peers[0]
        if peer is not None:
            env["CORE_PEER_ADDRESS"] = f"{org.engine_host(peer.options.engine_name)}:{descriptors.node_port(org, peer)}"
            env["CORE_PEER_TLS_ROOTCERT_FILE"] = os.path.join(msp.peer_tls_path(self.root, org, peer), "ca.crt")
            if org.is_secure:
                # the peer address is the engine host, the TLS certificate names the peer
                env["CORE_PEER_TLS_SERVERHOSTOVERRIDE"] = org.peer_full_name(peer)
        return env

    def extract_channel_config(self, envelope):
        # The CLI signs and submits whole envelopes
        return envelope

    async def sign_channel_config(self, config):
        os.makedirs(self.artifacts_dir, exist_ok=True)
        path = os.path.join(self.artifacts_dir, f"signed-{uuid.uuid4().hex}.tx")
        with open(path, "wb") as f:
            f.write(config)
        try:
            code, _, stderr = await run_tool([self.peer_bin, "channel", "signconfigtx", "-f", path], self.peer_env())
            if code != 0:
                raise LedgerError(f"Cannot sign the channel configuration: {stderr.strip()}")
            with open(path, "rb") as f:
                return f.read()
        finally:
            os.remove(path)

    async def create_channel(self, request):
        name = request["name"]
        os.makedirs(self.artifacts_dir, exist_ok=True)
        tx_path = os.path.join(self.artifacts_dir, f"{name}-signed.tx")
        with open(tx_path, "wb") as f:
            # signconfigtx returns the whole signed envelope, the last one carries every signature
            f.write(request["signatures"][-1] if request.get("signatures") else request["config"])
        args = [self.peer_bin, "channel", "create", "-c", name, "-f", tx_path,
                "--outputBlock", os.path.join(self.artifacts_dir, f"{name}.block")]
        args += self.orderer_args()
        code, _, stderr = await run_tool(args, self.peer_env())
        if code != 0:
            return {"status": "FAILED", "info": stderr.strip()}
        return {"status": "SUCCESS"}

    def get_channel(self, name):
        if not os.path.exists(self.profile_path):
            return None
        with open(self.profile_path, "r") as f:
            profile = yaml.safe_load(f) or {}
        if name not in (profile.get("channels") or {}):
            return None
        return PeerCliChannel(self, name)

import asyncio
import os
from typing import Callable, List, Union

from bnc.config import (CHANNEL_JOIN_DELAY, FABRIC_TOOLS_CONFIGTXGEN,
                        GENESIS_FILE_NAME, SYSTEM_CHANNEL_NAME, log)
from bnc.fabric import descriptors, msp
from bnc.fabric.exceptions import (ChannelCreationFailed, ChannelJoinFailed,
                                   ChannelNotDefined, LedgerError)
from bnc.fabric.ledger import LedgerClient, PeerCliLedgerClient, run_tool
from bnc.fabric.result import Result
from bnc.fabric.retry import RetryPolicy
from bnc.fabric.topology import Network, Organization, Peer


class ChannelCoordinator:
    """Creates channels and joins peers to them.

    :param client_factory: returns the ledger client acting as the admin of an organization
    :param retry_policy: used for the genesis block fetch, the only read-only step
    :param join_delay: seconds granted to the peers to settle after a join
    """

    def __init__(
        self,
            network: Network,
            client_factory: Callable[[Organization], LedgerClient] = None,
            retry_policy: RetryPolicy = None,
            join_delay: float = CHANNEL_JOIN_DELAY,
    ):
        self.network = network
        self.client_factory = client_factory or (lambda org: PeerCliLedgerClient(network, org))
        self.retry_policy = retry_policy or RetryPolicy()
        self.join_delay = join_delay

    def _config_path(self, channel_config_path: str) -> str:
        if os.path.isabs(channel_config_path):
            return channel_config_path
        return os.path.join(msp.artifacts_path(self.network.options.network_config_path), channel_config_path)

    async def create_channel(self, channel_name: str, channel_config_path: str, org: Organization) -> Result:
        """Submit the channel creation transaction, signed by the organization admin.
        Not retried: the orderer may already have applied part of it."""
        log.info(f"ChannelCoordinator: Creating channel {channel_name}...")
        try:
            client = self.client_factory(org)
            with open(self._config_path(channel_config_path), "rb") as f:
                envelope = f.read()
            # Signing the channel config is required by the orderer's channel creation policy
            config = client.extract_channel_config(envelope)
            signature = await client.sign_channel_config(config)
            request = {
                "config": config,
                "signatures": [signature],
                "name": channel_name,
                "tx_id": client.new_transaction_id(),
            }
            response = await client.create_channel(request)
        except Exception as e:
            log.error(f"ChannelCoordinator: failed to create the channel {channel_name}: {e}")
            return Result.failure(ChannelCreationFailed(f"Failed to create the channel {channel_name}: {e}"))

        status = response.get("status") if response else None
        if status != "SUCCESS":
            log.error(f"ChannelCoordinator: the orderer answered {status} to the creation of {channel_name}")
            return Result.failure(ChannelCreationFailed(
                f"Failed to create the channel {channel_name}: status {status}"))
        log.info(f"ChannelCoordinator: successfully created the channel {channel_name}")
        return Result.success(channel_name)

    def _target_name(self, org: Organization, peer: Union[Peer, str]) -> str:
        return org.peer_full_name(peer) if isinstance(peer, Peer) else peer

    async def join_channel(self, channel_name: str, peers: List[Union[Peer, str]], org: Organization) -> Result:
        """Join `peers` of the organization to the channel. Succeeds only if every peer joined."""
        log.info(f"ChannelCoordinator: calling peers of {org.full_name} to join the channel {channel_name}")
        targets = [self._target_name(org, p) for p in peers]
        failures = {}
        channel = None
        try:
            client = self.client_factory(org)
            channel = client.get_channel(channel_name)
            if channel is None:
                raise ChannelNotDefined(f"Channel {channel_name} was not defined in the connection profile")

            genesis_block = await self.retry_policy.call(
                channel.get_genesis_block, {"tx_id": client.new_transaction_id()})

            join_request = {
                "targets": targets,
                "tx_id": client.new_transaction_id(),
                "block": genesis_block,
            }
            # Give the channel time to settle on the peers, whatever their answer order
            _, results = await asyncio.gather(asyncio.sleep(self.join_delay), channel.join_channel(join_request))
            log.debug(f"ChannelCoordinator: join channel responses {results}")

            for target, result in zip(targets, results):
                if isinstance(result, BaseException):
                    failures[target] = f"Failed to join peer to the channel with error :: {result}"
                elif getattr(result, "status", None) == 200:
                    log.info(f"ChannelCoordinator: successfully joined peer {target} to the channel {channel_name}")
                else:
                    failures[target] = (f"Failed to join peer to the channel {channel_name} "
                                        f"(status {getattr(result, 'status', None)})")
            for target in targets[len(results):]:
                failures[target] = "No response from the peer"
        except Exception as e:
            log.error(f"ChannelCoordinator: failed to join channel {channel_name}: {e}")
            error = e if isinstance(e, ChannelNotDefined) else ChannelJoinFailed(
                f"Failed to join channel {channel_name}: {e}")
            return Result.failure(error)
        finally:
            if channel is not None:
                channel.close()

        if failures:
            for target, reason in failures.items():
                log.error(f"ChannelCoordinator: {target}: {reason}")
            return Result.failure(ChannelJoinFailed(
                f"Failed to join all peers to channel {channel_name}. cause: "
                + "; ".join(f"{t}: {r}" for t, r in failures.items()),
                failures))
        log.info(f"ChannelCoordinator: successfully joined peers in organization {org.full_name} "
                 f"to the channel {channel_name}")
        return Result.success(targets)


async def generate_channel_artifacts(network: Network, channel_name: str,
                                     configtxgen: str = FABRIC_TOOLS_CONFIGTXGEN) -> Result:
    """Write configtx.yaml, then create the orderer genesis block and the
    creation transaction of `channel_name` with configtxgen"""
    artifacts = msp.artifacts_path(network.options.network_config_path)
    try:
        descriptors.save(descriptors.configtx(network), artifacts, descriptors.CONFIGTX_FILE_NAME)
        genesis = os.path.join(artifacts, GENESIS_FILE_NAME)
        channel_tx = os.path.join(artifacts, descriptors.channel_tx_file(channel_name))
        commands = [
            [configtxgen, "-profile", descriptors.GENESIS_PROFILE, "-channelID", SYSTEM_CHANNEL_NAME,
             "-outputBlock", genesis, "-configPath", artifacts],
            [configtxgen, "-profile", descriptors.CHANNEL_PROFILE, "-channelID", channel_name,
             "-outputCreateChannelTx", channel_tx, "-configPath", artifacts],
        ]
        for cmd in commands:
            log.info(f"Creating channel artifacts with command: {' '.join(cmd)}")
            code, _, stderr = await run_tool(cmd)
            if code != 0:
                raise LedgerError(f"configtxgen failed: {stderr.strip()}")
    except (LedgerError, OSError) as e:
        log.error(f"Channel artifacts for {channel_name} could not be created: {e}")
        return Result.failure(e if isinstance(e, LedgerError) else LedgerError(str(e)))
    log.info(f"Channel artifacts for {channel_name} created successfully")
    return Result.success({"genesis_block": genesis, "channel_tx": channel_tx})

import os

import pytest

from bnc.fabric import msp
from bnc.fabric.channels import ChannelCoordinator, generate_channel_artifacts
from bnc.fabric.exceptions import (ChannelCreationFailed, ChannelJoinFailed,
                                   ChannelNotDefined, LedgerError)

from tests.conftest import FakeChannel, FakeLedgerClient

PEER0 = "peer0.org1.example.com"
PEER1 = "peer1.org1.example.com"


def _coordinator(network, client, retry):
    return ChannelCoordinator(network, lambda org: client, retry, join_delay=0)


@pytest.fixture
def channel_tx(tmp_path):
    artifacts = msp.artifacts_path(str(tmp_path))
    os.makedirs(artifacts)
    with open(os.path.join(artifacts, "channel.tx"), "wb") as f:
        f.write(b"envelope")
    return "channel.tx"


@pytest.mark.asyncio
async def test_create_channel_success(network, org, fast_retry, channel_tx):
    client = FakeLedgerClient()
    result = await _coordinator(network, client, fast_retry).create_channel("mychannel", channel_tx, org)

    assert result
    assert result.value == "mychannel"
    request = client.create_requests[0]
    assert request["name"] == "mychannel"
    assert request["config"] == b"config:envelope"
    assert request["signatures"] == [b"signature"]
    assert request["tx_id"]
    assert client.signed == [b"config:envelope"]


@pytest.mark.asyncio
async def test_create_channel_failed_status(network, org, fast_retry, channel_tx):
    client = FakeLedgerClient(create_response={"status": "FAILED", "info": "BAD_REQUEST"})
    result = await _coordinator(network, client, fast_retry).create_channel("mychannel", channel_tx, org)
    assert not result
    assert isinstance(result.error, ChannelCreationFailed)
    assert len(client.create_requests) == 1


@pytest.mark.asyncio
async def test_create_channel_error_is_not_retried(network, org, fast_retry, channel_tx):
    client = FakeLedgerClient(create_error=ConnectionError("orderer down"))
    result = await _coordinator(network, client, fast_retry).create_channel("mychannel", channel_tx, org)
    assert not result
    assert "orderer down" in str(result.error)
    assert len(client.create_requests) == 1


@pytest.mark.asyncio
async def test_create_channel_missing_envelope(network, org, fast_retry):
    result = await _coordinator(network, FakeLedgerClient(), fast_retry).create_channel(
        "mychannel", "missing.tx", org)
    assert not result
    assert isinstance(result.error, ChannelCreationFailed)


@pytest.mark.asyncio
async def test_join_channel_all_peers(network, org, fast_retry):
    channel = FakeChannel()
    client = FakeLedgerClient(channels={"mychannel": channel})
    result = await _coordinator(network, client, fast_retry).join_channel("mychannel", org.peers, org)

    assert result
    assert result.value == [PEER0, PEER1]
    request = channel.join_requests[0]
    assert request["targets"] == [PEER0, PEER1]
    assert request["block"] == b"genesis"
    assert channel.genesis_calls == 1
    assert channel.closed


@pytest.mark.asyncio
async def test_join_channel_one_peer_throws(network, org, fast_retry):
    channel = FakeChannel(outcomes={PEER1: ConnectionError("peer1 unreachable")})
    client = FakeLedgerClient(channels={"mychannel": channel})
    result = await _coordinator(network, client, fast_retry).join_channel("mychannel", org.peers, org)

    assert not result
    assert isinstance(result.error, ChannelJoinFailed)
    assert PEER1 in str(result.error)
    assert PEER0 not in str(result.error)
    assert list(result.error.failures) == [PEER1]
    assert channel.closed


@pytest.mark.asyncio
async def test_join_channel_non_200_status(network, org, fast_retry):
    channel = FakeChannel(outcomes={PEER0: 500})
    client = FakeLedgerClient(channels={"mychannel": channel})
    result = await _coordinator(network, client, fast_retry).join_channel("mychannel", [PEER0, PEER1], org)

    assert not result
    assert list(result.error.failures) == [PEER0]
    assert "status 500" in result.error.failures[PEER0]


@pytest.mark.asyncio
async def test_join_channel_not_defined(network, org, fast_retry):
    result = await _coordinator(network, FakeLedgerClient(), fast_retry).join_channel("mychannel", org.peers, org)
    assert not result
    assert isinstance(result.error, ChannelNotDefined)


@pytest.mark.asyncio
async def test_join_channel_retries_genesis_fetch(network, org, fast_retry):
    channel = FakeChannel(genesis_errors=1)
    client = FakeLedgerClient(channels={"mychannel": channel})
    assert await _coordinator(network, client, fast_retry).join_channel("mychannel", org.peers, org)
    assert channel.genesis_calls == 2


@pytest.mark.asyncio
async def test_join_channel_genesis_unavailable(network, org, fast_retry):
    channel = FakeChannel(genesis_errors=5)
    client = FakeLedgerClient(channels={"mychannel": channel})
    result = await _coordinator(network, client, fast_retry).join_channel("mychannel", org.peers, org)
    assert not result
    assert isinstance(result.error, ChannelJoinFailed)
    assert channel.join_requests == []
    assert channel.closed


@pytest.mark.asyncio
async def test_generate_channel_artifacts(network, tmp_path, monkeypatch):
    commands = []

    async def fake_run_tool(args, env=None):
        commands.append(args)
        return 0, "", ""

    monkeypatch.setattr("bnc.fabric.channels.run_tool", fake_run_tool)
    result = await generate_channel_artifacts(network, "mychannel", configtxgen="configtxgen")

    artifacts = msp.artifacts_path(str(tmp_path))
    assert result
    assert result.value == {
        "genesis_block": os.path.join(artifacts, "genesis.block"),
        "channel_tx": os.path.join(artifacts, "mychannel.tx"),
    }
    assert os.path.exists(os.path.join(artifacts, "configtx.yaml"))
    assert commands[0][:3] == ["configtxgen", "-profile", "OrdererGenesis"]
    assert commands[1][:5] == ["configtxgen", "-profile", "ApplicationChannel", "-channelID", "mychannel"]


@pytest.mark.asyncio
async def test_generate_channel_artifacts_tool_failure(network, monkeypatch):
    async def failing_run_tool(args, env=None):
        return 1, "", "profile not found"

    monkeypatch.setattr("bnc.fabric.channels.run_tool", failing_run_tool)
    result = await generate_channel_artifacts(network, "mychannel", configtxgen="configtxgen")
    assert not result
    assert isinstance(result.error, LedgerError)
    assert "profile not found" in str(result.error)

import os

import pytest
import yaml

from bnc.fabric import descriptors, msp
from bnc.fabric.exceptions import InvalidTopologyError
from bnc.fabric.topology import NodeOptions, Peer

from tests.conftest import make_network


def _all(network, org, channel=None):
    return [
        descriptors.ca_compose(network, org),
        descriptors.orderer_compose(network, org),
        descriptors.peer_compose(network, org),
        descriptors.connection_profile(network, org, [channel] if channel else None),
        descriptors.configtx(network),
    ]


def test_rendering_is_deterministic(tmp_path):
    first = make_network(tmp_path, is_secure=True, n_orgs=2)
    second = make_network(tmp_path, is_secure=True, n_orgs=2)
    for org_a, org_b in zip(first.organizations, second.organizations):
        assert _all(first, org_a, "mychannel") == _all(second, org_b, "mychannel")


def test_ca_compose(network, org, tmp_path):
    content = yaml.safe_load(descriptors.ca_compose(network, org))
    service = content["services"]["ca.org1.example.com"]
    assert service["ports"] == ["7054:7054"]
    assert "FABRIC_CA_SERVER_TLS_ENABLED=false" in service["environment"]
    assert "-b admin:adminpw" in service["command"]
    assert service["volumes"] == [f"{msp.ca_home_path(str(tmp_path), org)}:/tmp/hyperledger/fabric-ca"]
    assert content["networks"] == {"bnc_network": {"external": True}}


def test_peer_compose(network, org, tmp_path):
    content = yaml.safe_load(descriptors.peer_compose(network, org))
    assert list(content["services"]) == ["peer0.org1.example.com", "peer1.org1.example.com"]
    peer0 = content["services"]["peer0.org1.example.com"]
    assert peer0["ports"] == ["7051:7051"]
    assert "CORE_PEER_GOSSIP_BOOTSTRAP=peer1.org1.example.com:8051" in peer0["environment"]
    assert "CORE_PEER_LOCALMSPID=Org1MSP" in peer0["environment"]
    assert f"{msp.peer_msp_path(str(tmp_path), org, org.peers[0])}:/etc/hyperledger/fabric/msp" in peer0["volumes"]
    assert f"{msp.peer_tls_path(str(tmp_path), org, org.peers[0])}:/etc/hyperledger/fabric/tls" in peer0["volumes"]
    assert peer0["extra_hosts"] == ["peer1.org1.example.com:127.0.0.1", "orderer0.org1.example.com:127.0.0.1"]
    assert list(content["volumes"]) == ["peer0.org1.example.com", "peer1.org1.example.com"]


def test_orderer_compose(network, org, tmp_path):
    content = yaml.safe_load(descriptors.orderer_compose(network, org))
    orderer = content["services"]["orderer0.org1.example.com"]
    assert orderer["ports"] == ["7050:7050"]
    assert "ORDERER_GENERAL_LISTENPORT=7050" in orderer["environment"]
    genesis = os.path.join(str(tmp_path), "artifacts", "genesis.block")
    assert f"{genesis}:/var/hyperledger/orderer/orderer.genesis.block" in orderer["volumes"]
    assert "orderer0.org1.example.com:127.0.0.1" not in orderer["extra_hosts"]


def test_node_without_port_is_rejected(tmp_path):
    network = make_network(tmp_path)
    org = network.organizations[0]
    org.peers.append(Peer("peer2", NodeOptions()))
    with pytest.raises(InvalidTopologyError, match="peer2"):
        descriptors.peer_compose(network, org)


def test_connection_profile(secure_network, tmp_path):
    org = secure_network.organizations[0]
    profile = yaml.safe_load(descriptors.connection_profile(secure_network, org))
    assert "channels" not in profile
    assert profile["organizations"]["org1"]["mspid"] == "Org1MSP"
    assert profile["peers"]["peer0.org1.example.com"]["url"] == "grpcs://127.0.0.1:7051"
    assert profile["orderers"]["orderer0.org1.example.com"]["url"] == "grpcs://127.0.0.1:7050"
    assert profile["certificateAuthorities"]["ca.org1.example.com"]["url"] == "https://127.0.0.1:7054"
    assert profile["client"]["credentialStore"]["path"] == msp.wallet_path(str(tmp_path), org)

    with_channel = yaml.safe_load(descriptors.connection_profile(secure_network, org, ["mychannel"]))
    channel = with_channel["channels"]["mychannel"]
    assert channel["orderers"] == ["orderer0.org1.example.com"]
    assert list(channel["peers"]) == ["peer0.org1.example.com", "peer1.org1.example.com"]


def test_save_connection_profile_keeps_declared_channels(network, org, tmp_path):
    assert descriptors.declared_channels(network, org) == []
    path = descriptors.save_connection_profile(network, org, "first")
    assert path == descriptors.connection_profile_path(network, org)
    descriptors.save_connection_profile(network, org, "second")
    descriptors.save_connection_profile(network, org)
    descriptors.save_connection_profile(network, org, "first")
    assert descriptors.declared_channels(network, org) == ["first", "second"]


def test_configtx(tmp_path):
    network = make_network(tmp_path, is_secure=True, n_orgs=2)
    content = yaml.safe_load(descriptors.configtx(network))
    assert [o["Name"] for o in content["Organizations"]] == ["Org1MSP", "Org2MSP"]

    orderer = content["Profiles"][descriptors.GENESIS_PROFILE]["Orderer"]
    assert orderer["OrdererType"] == "etcdraft"
    assert orderer["Addresses"] == ["orderer0.org1.example.com:7050"]
    assert [c["Host"] for c in orderer["EtcdRaft"]["Consenters"]] == ["orderer0.org1.example.com"]

    application = content["Profiles"][descriptors.CHANNEL_PROFILE]["Application"]
    assert [o["Name"] for o in application["Organizations"]] == ["Org1MSP", "Org2MSP"]
    assert application["Organizations"][1]["AnchorPeers"] == [{"Host": "peer0.org2.example.com", "Port": 9051}]


def test_configtx_without_tls_uses_solo(network):
    orderer = yaml.safe_load(descriptors.configtx(network))["Profiles"][descriptors.GENESIS_PROFILE]["Orderer"]
    assert orderer["OrdererType"] == "solo"
    assert "EtcdRaft" not in orderer


def test_save(tmp_path):
    path = descriptors.save("content", str(tmp_path / "out"), "file.yaml")
    with open(path) as f:
        assert f.read() == "content"

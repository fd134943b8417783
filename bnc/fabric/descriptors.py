import os
from typing import Dict, List, Tuple, Union

import yaml

from bnc.config import (FABRIC_CA_IMAGE, FABRIC_ORDERER_IMAGE, FABRIC_PEER_IMAGE,
                        GENESIS_FILE_NAME, log)
from bnc.fabric import msp
from bnc.fabric.exceptions import InvalidTopologyError
from bnc.fabric.topology import Network, Orderer, Organization, Peer

CONFIGTX_FILE_NAME = "configtx.yaml"
GENESIS_PROFILE = "OrdererGenesis"
CHANNEL_PROFILE = "ApplicationChannel"
CONSORTIUM_NAME = "BncConsortium"


def ca_compose_file(org: Organization) -> str:
    return f"docker-compose-ca-{org.full_name}.yaml"


def orderer_compose_file(org: Organization) -> str:
    return f"docker-compose-orderers-{org.full_name}.yaml"


def peer_compose_file(org: Organization) -> str:
    return f"docker-compose-peers-{org.full_name}.yaml"


def connection_profile_file(org: Organization) -> str:
    return f"connection-profile-{org.full_name}.yaml"


def channel_tx_file(channel_name: str) -> str:
    return f"{channel_name}.tx"


def _dump(content: Dict) -> str:
    # Insertion order is kept so that the same topology always renders the same bytes
    return yaml.safe_dump(content, sort_keys=False, default_flow_style=False)


def save(content: str, directory: str, file_name: str) -> str:
    """Write a descriptor and return its path"""
    os.makedirs(directory, exist_ok=True)
    path = os.path.join(directory, file_name)
    with open(path, "w") as f:
        f.write(content)
    log.debug(f"Descriptors: saved {path}")
    return path


def node_port(org: Organization, node: Union[Peer, Orderer]) -> int:
    if not node.options.ports:
        raise InvalidTopologyError(f"{node.name} of organization {org.full_name} exposes no port")
    return node.options.ports[0]


def _extra_hosts(hosts: List[Tuple[str, str]]) -> List[str]:
    return [f"{name}:{host}" for name, host in hosts]


def _bool(value: bool) -> str:
    return "true" if value else "false"


def _compose(network: Network, services: Dict, volumes: List[str] = None) -> str:
    content = {"version": "2"}
    if volumes:
        content["volumes"] = {v: None for v in volumes}
    content["networks"] = {network.options.compose_network: {"external": True}}
    content["services"] = services
    return _dump(content)


def ca_compose(network: Network, org: Organization) -> str:
    """Compose descriptor of the organization CA"""
    opts = org.ca.options
    root = network.options.network_config_path
    service = {
        "container_name": org.ca_name,
        "image": f"{FABRIC_CA_IMAGE}:{network.options.hyperledger_ca_version}",
        "command": f"sh -c 'fabric-ca-server start -d -b {opts.user}:{opts.password} "
                   f"--port {opts.port} --cfg.identities.allowremove'",
        "environment": [
            "FABRIC_CA_SERVER_HOME=/tmp/hyperledger/fabric-ca/crypto",
            f"FABRIC_CA_SERVER_CA_NAME={org.ca_name}",
            f"FABRIC_CA_SERVER_TLS_ENABLED={_bool(org.is_secure)}",
            f"FABRIC_CA_SERVER_CSR_CN={org.ca_cn}",
            f"FABRIC_CA_SERVER_CSR_HOSTS=0.0.0.0,127.0.0.1,{org.ca_name}",
            "FABRIC_CA_SERVER_DEBUG=true",
        ],
        "ports": [f"{opts.port}:{opts.port}"],
        "volumes": [f"{msp.ca_home_path(root, org)}:/tmp/hyperledger/fabric-ca"],
        "networks": [network.options.compose_network],
    }
    return _compose(network, {org.ca_name: service})


def orderer_compose(network: Network, org: Organization) -> str:
    """Compose descriptor with one service per orderer of the organization"""
    root = network.options.network_config_path
    genesis = os.path.join(msp.artifacts_path(root), GENESIS_FILE_NAME)
    services = {}
    volumes = []
    for orderer in org.orderers:
        name = org.orderer_service_name(orderer)
        port = node_port(org, orderer)
        volumes.append(name)
        services[name] = {
            "container_name": name,
            "image": f"{FABRIC_ORDERER_IMAGE}:{network.options.hyperledger_version}",
            "command": "orderer",
            "environment": [
                "FABRIC_LOGGING_SPEC=INFO",
                "ORDERER_GENERAL_LISTENADDRESS=0.0.0.0",
                f"ORDERER_GENERAL_LISTENPORT={port}",
                "ORDERER_GENERAL_BOOTSTRAPMETHOD=file",
                "ORDERER_GENERAL_BOOTSTRAPFILE=/var/hyperledger/orderer/orderer.genesis.block",
                f"ORDERER_GENERAL_LOCALMSPID={org.msp_id}",
                "ORDERER_GENERAL_LOCALMSPDIR=/var/hyperledger/orderer/msp",
                f"ORDERER_GENERAL_TLS_ENABLED={_bool(org.is_secure)}",
                "ORDERER_GENERAL_TLS_PRIVATEKEY=/var/hyperledger/orderer/tls/server.key",
                "ORDERER_GENERAL_TLS_CERTIFICATE=/var/hyperledger/orderer/tls/server.crt",
                "ORDERER_GENERAL_TLS_ROOTCAS=[/var/hyperledger/orderer/tls/ca.crt]",
                "ORDERER_GENERAL_CLUSTER_CLIENTCERTIFICATE=/var/hyperledger/orderer/tls/server.crt",
                "ORDERER_GENERAL_CLUSTER_CLIENTPRIVATEKEY=/var/hyperledger/orderer/tls/server.key",
                "ORDERER_GENERAL_CLUSTER_ROOTCAS=[/var/hyperledger/orderer/tls/ca.crt]",
            ],
            "ports": [f"{port}:{port}"],
            "volumes": [
                f"{genesis}:/var/hyperledger/orderer/orderer.genesis.block",
                f"{msp.orderer_msp_path(root, org, orderer)}:/var/hyperledger/orderer/msp",
                f"{msp.orderer_tls_path(root, org, orderer)}:/var/hyperledger/orderer/tls",
                f"{name}:/var/hyperledger/production/orderer",
            ],
            "extra_hosts": _extra_hosts(network.extra_hosts(exclude=name)),
            "networks": [network.options.compose_network],
        }
    return _compose(network, services, volumes)


def peer_compose(network: Network, org: Organization) -> str:
    """Compose descriptor with one service per peer of the organization"""
    root = network.options.network_config_path
    addresses = {org.peer_full_name(p): f"{org.peer_full_name(p)}:{node_port(org, p)}" for p in org.peers}
    services = {}
    volumes = []
    for peer in org.peers:
        name = org.peer_full_name(peer)
        port = node_port(org, peer)
        # Gossip bootstraps on the other peers of the organization, or on itself when alone
        bootstrap = [a for n, a in addresses.items() if n != name] or [addresses[name]]
        volumes.append(name)
        services[name] = {
            "container_name": name,
            "image": f"{FABRIC_PEER_IMAGE}:{network.options.hyperledger_version}",
            "command": "peer node start",
            "environment": [
                "CORE_VM_ENDPOINT=unix:///host/var/run/docker.sock",
                f"CORE_VM_DOCKER_HOSTCONFIG_NETWORKMODE={network.options.compose_network}",
                "FABRIC_LOGGING_SPEC=INFO",
                f"CORE_PEER_TLS_ENABLED={_bool(org.is_secure)}",
                "CORE_PEER_GOSSIP_USELEADERELECTION=true",
                "CORE_PEER_GOSSIP_ORGLEADER=false",
                "CORE_PEER_PROFILE_ENABLED=false",
                "CORE_PEER_MSPCONFIGPATH=/etc/hyperledger/fabric/msp",
                "CORE_PEER_TLS_CERT_FILE=/etc/hyperledger/fabric/tls/server.crt",
                "CORE_PEER_TLS_KEY_FILE=/etc/hyperledger/fabric/tls/server.key",
                "CORE_PEER_TLS_ROOTCERT_FILE=/etc/hyperledger/fabric/tls/ca.crt",
                f"CORE_PEER_ID={name}",
                f"CORE_PEER_ADDRESS={addresses[name]}",
                f"CORE_PEER_LISTENADDRESS=0.0.0.0:{port}",
                f"CORE_PEER_GOSSIP_BOOTSTRAP={' '.join(bootstrap)}",
                f"CORE_PEER_GOSSIP_EXTERNALENDPOINT={addresses[name]}",
                f"CORE_PEER_LOCALMSPID={org.msp_id}",
            ],
            "ports": [f"{port}:{port}"],
            "volumes": [
                "/var/run/docker.sock:/host/var/run/docker.sock",
                f"{msp.peer_msp_path(root, org, peer)}:/etc/hyperledger/fabric/msp",
                f"{msp.peer_tls_path(root, org, peer)}:/etc/hyperledger/fabric/tls",
                f"{name}:/var/hyperledger/production",
            ],
            "extra_hosts": _extra_hosts(network.extra_hosts(exclude=name)),
            "networks": [network.options.compose_network],
        }
    return _compose(network, services, volumes)


def connection_profile(network: Network, org: Organization, channels: List[str] = None) -> str:
    """Connection profile of an organization, in the format of the Fabric SDKs,
    declaring `channels`"""
    root = network.options.network_config_path
    grpc = "grpcs" if org.is_secure else "grpc"
    wallet = msp.wallet_path(root, org)
    admin_msp = msp.admin_msp_path(root, org)

    orderers = {}
    for owner in network.organizations:
        for orderer in owner.orderers:
            name = owner.orderer_service_name(orderer)
            orderers[name] = {
                "url": f"{grpc}://{owner.engine_host(orderer.options.engine_name)}:{node_port(owner, orderer)}",
                "grpcOptions": {"ssl-target-name-override": name},
                "tlsCACerts": {"path": os.path.join(msp.orderer_tls_path(root, owner, orderer), "ca.crt")},
            }

    peers = {}
    for peer in org.peers:
        name = org.peer_full_name(peer)
        peers[name] = {
            "url": f"{grpc}://{org.engine_host(peer.options.engine_name)}:{node_port(org, peer)}",
            "grpcOptions": {"ssl-target-name-override": name, "request-timeout": 120001},
            "tlsCACerts": {"path": os.path.join(msp.peer_tls_path(root, org, peer), "ca.crt")},
        }

    profile = {
        "name": f"connection.{org.name}.profile",
        "x-type": "hlfv1",
        "description": f"Connection profile for organization {org.name}",
        "version": "1.0",
        "client": {
            "organization": org.name,
            "credentialStore": {"path": wallet, "cryptoStore": {"path": wallet}},
        },
    }
    if channels:
        profile["channels"] = {
            channel_name: {
                "orderers": list(orderers),
                "peers": {
                    name: {"endorsingPeer": True, "chaincodeQuery": True, "ledgerQuery": True, "eventSource": True}
                    for name in peers
                },
            }
            for channel_name in channels
        }
    profile["organizations"] = {
        org.name: {
            "mspid": org.msp_id,
            "peers": list(peers),
            "certificateAuthorities": [org.ca_name],
            "adminPrivateKey": {"path": os.path.join(admin_msp, "keystore", msp.KEY_FILE_NAME)},
            "signedCert": {"path": os.path.join(admin_msp, "signcerts", msp.admin_cert_file_name(org))},
        }
    }
    profile["orderers"] = orderers
    profile["peers"] = peers
    profile["certificateAuthorities"] = {
        org.ca_name: {
            "url": f"http{'s' if org.is_secure else ''}://"
                   f"{org.engine_host(org.ca.options.engine_name)}:{org.ca.options.port}",
            "httpOptions": {"verify": False},
            "tlsCACerts": {"path": os.path.join(msp.org_msp_path(root, org), "tlscacerts")},
            "registrar": [{"enrollId": org.ca.options.user, "enrollSecret": org.ca.options.password}],
            "caName": org.ca_name,
        }
    }
    return _dump(profile)


def connection_profile_path(network: Network, org: Organization) -> str:
    return os.path.join(msp.settings_path(network.options.network_config_path), connection_profile_file(org))


def declared_channels(network: Network, org: Organization) -> List[str]:
    """Channels declared by the saved connection profile of the organization"""
    path = connection_profile_path(network, org)
    if not os.path.exists(path):
        return []
    with open(path, "r") as f:
        profile = yaml.safe_load(f) or {}
    return list(profile.get("channels") or {})


def save_connection_profile(network: Network, org: Organization, channel_name: str = None) -> str:
    """Regenerate the connection profile of the organization, keeping the
    channels already declared and adding `channel_name`"""
    channels = declared_channels(network, org)
    if channel_name and channel_name not in channels:
        channels.append(channel_name)
    return save(connection_profile(network, org, channels),
                msp.settings_path(network.options.network_config_path), connection_profile_file(org))


def _signature_policies(msp_id: str) -> Dict:
    return {
        "Readers": {"Type": "Signature", "Rule": f"OR('{msp_id}.admin', '{msp_id}.peer', '{msp_id}.client')"},
        "Writers": {"Type": "Signature", "Rule": f"OR('{msp_id}.admin', '{msp_id}.client')"},
        "Admins": {"Type": "Signature", "Rule": f"OR('{msp_id}.admin')"},
        "Endorsement": {"Type": "Signature", "Rule": f"OR('{msp_id}.peer')"},
    }


def _implicit_policies(*extra: Tuple[str, str]) -> Dict:
    policies = {
        "Readers": {"Type": "ImplicitMeta", "Rule": "ANY Readers"},
        "Writers": {"Type": "ImplicitMeta", "Rule": "ANY Writers"},
        "Admins": {"Type": "ImplicitMeta", "Rule": "MAJORITY Admins"},
    }
    for name, rule in extra:
        policies[name] = {"Type": "ImplicitMeta", "Rule": rule}
    return policies


def configtx(network: Network) -> str:
    """configtx.yaml consumed by configtxgen: one profile for the orderer genesis
    block and one for the application channels of the network"""
    root = network.options.network_config_path
    capabilities = {"V2_0": True}

    organizations = []
    orderer_orgs = []
    consenters = []
    addresses = []
    for org in network.organizations:
        definition = {
            "Name": org.msp_id,
            "ID": org.msp_id,
            "MSPDir": msp.org_msp_path(root, org),
            "Policies": _signature_policies(org.msp_id),
        }
        if org.orderers:
            endpoints = [f"{org.orderer_service_name(o)}:{node_port(org, o)}" for o in org.orderers]
            definition["OrdererEndpoints"] = endpoints
            addresses += endpoints
            orderer_orgs.append(definition)
            for o in org.orderers:
                tls_cert = os.path.join(msp.orderer_tls_path(root, org, o), "server.crt")
                consenters.append({
                    "Host": org.orderer_service_name(o),
                    "Port": node_port(org, o),
                    "ClientTLSCert": tls_cert,
                    "ServerTLSCert": tls_cert,
                })
        if org.peers:
            definition["AnchorPeers"] = [{"Host": org.peer_full_name(org.peers[0]), "Port": node_port(org, org.peers[0])}]
        organizations.append(definition)

    # Raft needs mutual TLS between the orderers, fall back to solo without it
    raft = all(o.is_secure for o in network.organizations if o.orderers)
    orderer = {
        "OrdererType": "etcdraft" if raft else "solo",
        "Addresses": addresses,
        "BatchTimeout": "2s",
        "BatchSize": {"MaxMessageCount": 500, "AbsoluteMaxBytes": "10 MB", "PreferredMaxBytes": "2 MB"},
        "Organizations": orderer_orgs,
        "Policies": _implicit_policies(("BlockValidation", "ANY Writers")),
        "Capabilities": capabilities,
    }
    if raft:
        orderer["EtcdRaft"] = {"Consenters": consenters}

    application = {
        "Organizations": [o for o in organizations if "AnchorPeers" in o],
        "Policies": _implicit_policies(("LifecycleEndorsement", "MAJORITY Endorsement"),
                                       ("Endorsement", "MAJORITY Endorsement")),
        "Capabilities": capabilities,
    }

    content = {
        "Organizations": organizations,
        "Profiles": {
            GENESIS_PROFILE: {
                "Policies": _implicit_policies(),
                "Capabilities": capabilities,
                "Orderer": orderer,
                "Consortiums": {CONSORTIUM_NAME: {"Organizations": application["Organizations"]}},
            },
            CHANNEL_PROFILE: {
                "Consortium": CONSORTIUM_NAME,
                "Policies": _implicit_policies(),
                "Capabilities": capabilities,
                "Application": application,
            },
        },
    }
    return _dump(content)

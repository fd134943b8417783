import argparse
import asyncio
import json
import os
import sys

from bnc.config import cleanup, log, set_verbose
from bnc.fabric import descriptors, msp
from bnc.fabric.network import FabricNetwork
from bnc.fabric.topology import NetworkOptions, generate_topology, hosts_line, load_network


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bnc", description="Provision a Hyperledger Fabric network: CAs, identities, nodes and channels.",
        add_help=True)
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logs")
    parser.add_argument("-c", "--config", type=str, help="Network definition (YAML). A topology is generated when missing")

    # Generated topology parameters
    parser.add_argument("--n-orgs", type=int, default=1, help="Number of Fabric organizations")
    parser.add_argument("--n-peer-per-org", type=int, default=2, help="Number of Fabric peers per organization")
    parser.add_argument("--n-orderers", type=int, default=1, help="Number of Fabric orderers")
    parser.add_argument("--starting-port", type=int, default=7160, help="Starting port for the Fabric network")
    parser.add_argument("--no-tls", action="store_true", help="Disable TLS in the generated topology")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("hosts", help="Print the /etc/hosts line aliasing every service to the local host")
    gen = sub.add_parser("generate", help="Write the compose files, connection profiles and channel artifacts")
    gen.add_argument("--channel", type=str, default="mychannel", help="Application channel name")
    up = sub.add_parser("up", help="Start the CAs, build the certificates and start the nodes")
    up.add_argument("--channel", type=str, default="mychannel", help="Application channel name")
    certs = sub.add_parser("certs", help="Build the certificates of the organizations")
    certs.add_argument("--org", type=str, help="Only this organization")

    channel = sub.add_parser("channel", help="Channel operations")
    channel_sub = channel.add_subparsers(dest="channel_command", required=True)
    create = channel_sub.add_parser("create", help="Create an application channel")
    create.add_argument("--channel", type=str, default="mychannel")
    create.add_argument("--tx", type=str, help="Channel creation transaction, artifacts/<channel>.tx by default")
    create.add_argument("--org", type=str, help="Organization signing the creation")
    join = channel_sub.add_parser("join", help="Join the peers to a channel")
    join.add_argument("--channel", type=str, default="mychannel")
    join.add_argument("--org", type=str, help="Only the peers of this organization")

    enroll = sub.add_parser("enroll", help="Register and enroll a new identity into the wallet")
    enroll.add_argument("type", help="Identity type: client, peer, orderer, admin...")
    enroll.add_argument("id", help="Enrollment id")
    enroll.add_argument("secret", help="Enrollment secret")
    enroll.add_argument("affiliation", help="Affiliation, e.g. org1.department1")
    enroll.add_argument("msp_id", metavar="mspID", help="MSP the identity belongs to")
    enroll.add_argument("--org", type=str, help="Organization whose CA issues the identity, the first one by default")
    fetch = sub.add_parser("fetch-identity", help="Print an identity of the wallet, without its private key")
    fetch.add_argument("id", help="Enrollment id")
    fetch.add_argument("--org", type=str, help="Organization owning the wallet, the first one by default")
    delete = sub.add_parser("delete-identity", help="Remove an identity from the wallet")
    delete.add_argument("id", help="Enrollment id")
    delete.add_argument("--org", type=str, help="Organization owning the wallet, the first one by default")
    identities = sub.add_parser("list-identities", help="List the identities of the wallet")
    identities.add_argument("--org", type=str, help="Organization owning the wallet, the first one by default")

    sub.add_parser("down", help="Stop and remove the network containers")
    clean = sub.add_parser("clean", help="Remove the generated network directory and the fabric images")
    clean.add_argument("-R", "--no-rmi", dest="rmi", action="store_false", help="Do not remove docker images")
    return parser


def load(args):
    if args.config:
        return load_network(args.config)
    return generate_topology(
        starting_port=args.starting_port,
        n_orgs=args.n_orgs,
        n_peer_per_org=args.n_peer_per_org,
        n_orderers=args.n_orderers,
        is_secure=not args.no_tls,
        options=NetworkOptions(),
    )


def write_descriptors(network):
    root = network.options.network_config_path
    compose_dir = msp.docker_compose_path(root)
    for org in network.organizations:
        descriptors.save(descriptors.ca_compose(network, org), compose_dir, descriptors.ca_compose_file(org))
        if org.orderers:
            descriptors.save(descriptors.orderer_compose(network, org), compose_dir,
                             descriptors.orderer_compose_file(org))
        if org.peers:
            descriptors.save(descriptors.peer_compose(network, org), compose_dir, descriptors.peer_compose_file(org))
        descriptors.save_connection_profile(network, org)


async def run(args) -> bool:
    network = load(args)
    os.makedirs(network.options.network_config_path, exist_ok=True)
    fn = FabricNetwork(network)

    if args.command == "generate":
        write_descriptors(network)
        return bool(await fn.generate_channel_artifacts(args.channel))
    if args.command == "up":
        for step in (fn.start_org_ca, fn.build_certificate):
            if not await step():
                return False
        if not await fn.generate_channel_artifacts(args.channel):
            return False
        return bool(await fn.start_nodes())
    if args.command == "certs":
        return bool(await fn.build_certificate(args.org))
    if args.command == "channel":
        if args.channel_command == "create":
            return bool(await fn.create_channel(args.channel, args.tx, args.org))
        return bool(await fn.join_channel(args.channel, args.org))
    if args.command == "down":
        return bool(await fn.teardown())
    if args.command == "clean":
        removed = await fn.remove_images() if args.rmi else True
        cleanup(network.options.network_config_path)
        return bool(removed)
    if args.command == "enroll":
        return bool(await fn.enroll_identity(args.type, args.id, args.secret, args.affiliation, args.msp_id, args.org))
    if args.command == "fetch-identity":
        result = fn.fetch_identity(args.id, args.org)
        if result:
            content = result.value.to_dict()
            del content["credentials"]["privateKey"]
            print(json.dumps(content, indent=2))
        return bool(result)
    if args.command == "delete-identity":
        return bool(fn.delete_identity(args.id, args.org))
    if args.command == "list-identities":
        result = fn.list_identities(args.org)
        for enrollment_id in result.value:
            print(enrollment_id)
        return bool(result)
    return False


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    set_verbose(args.verbose)

    if args.command == "hosts":
        output_str = hosts_line(load(args))
        print(output_str)
        print("add the above to your /etc/hosts file with:")
        print(f"sudo sh -c 'echo \"{output_str}\" >> /etc/hosts'")
        return 0
    ok = asyncio.run(run(args))
    if not ok:
        log.error(f"bnc: {args.command} failed, see the logs above")
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())

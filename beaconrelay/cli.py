#!/usr/bin/env python3
"""
Beacon relay CLI

  beaconrelay serve   - Run the HTTP server
  beaconrelay init    - Create the data directory and system actor
  beaconrelay follow  - Follow another relay by handle
  beaconrelay listings - Print registered listings

Usage:
  beaconrelay serve [--config relay.yaml] [--host H] [--port P] [-v]
  beaconrelay init [--config relay.yaml] [--domain relay.example.com]
  beaconrelay follow relay@peer.example [--config relay.yaml]
"""

import argparse
import json
import logging
import sys
from typing import List, Optional

from .config import Config
from .errors import RelayError


def load_config(args) -> Config:
    return Config.load(
        args.config,
        domain=getattr(args, "domain", None),
        protocol=getattr(args, "protocol", None),
        host=getattr(args, "host", None),
        port=getattr(args, "port", None),
        data_dir=getattr(args, "data_dir", None),
        delivery_mode=getattr(args, "delivery_mode", None),
    )


def cmd_serve(args):
    """Run the relay server until interrupted."""
    from .server import RelayServer

    server = RelayServer(load_config(args))
    server.start()


def cmd_init(args):
    """Create the store and the system actor without serving."""
    from .activitypub.actor import SYSTEM_RELAY_ID, Relay
    from .store import Database

    config = load_config(args)
    db = Database(config.data_dir)
    relay = db.get_relay(SYSTEM_RELAY_ID)
    if relay is None:
        relay = db.insert_relay(Relay.create_system(config.system_identity))
        print(f"Created system relay: {relay.identity}")
    else:
        print(f"System relay already exists: {relay.identity}")
    print(f"Data directory: {config.data_dir}")
    print(f"Inbox: {relay.inbox}")


def cmd_follow(args):
    """Send a Follow from the system actor to another relay."""
    from .server import RelayServer

    server = RelayServer(load_config(args))
    try:
        relay = server.follow(args.handle)
    finally:
        server.delivery.close()
    print(f"Following {relay.identity} (inbox {relay.inbox})")


def cmd_listings(args):
    """Print registered listings as JSON."""
    from .store import Database

    config = load_config(args)
    db = Database(config.data_dir)
    listings = [l.to_public() for l in db.list_listings()]
    print(json.dumps(listings, indent=2))


def main(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(
        prog="beaconrelay",
        description="Beacon relay - federated directory of live sites",
    )
    parser.add_argument("--config", help="YAML config file")
    parser.add_argument("--data-dir", help="Data directory")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # serve command
    serve_parser = subparsers.add_parser("serve", help="Run the HTTP server")
    serve_parser.add_argument("--host", help="Host to bind to")
    serve_parser.add_argument("--port", type=int, help="Port to bind to")
    serve_parser.add_argument("--domain", help="Public domain (e.g. relay.example.com)")
    serve_parser.add_argument("--protocol", choices=["http://", "https://"], help="Public URL scheme")
    serve_parser.add_argument("--delivery-mode", choices=["sync", "queued"],
                              help="Outgoing activity delivery")

    # init command
    init_parser = subparsers.add_parser("init", help="Create the system actor")
    init_parser.add_argument("--domain", help="Public domain (e.g. relay.example.com)")
    init_parser.add_argument("--protocol", choices=["http://", "https://"], help="Public URL scheme")

    # follow command
    follow_parser = subparsers.add_parser("follow", help="Follow another relay")
    follow_parser.add_argument("handle", help="Relay handle, e.g. relay@peer.example")

    # listings command
    subparsers.add_parser("listings", help="Print registered listings")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    commands = {
        "serve": cmd_serve,
        "init": cmd_init,
        "follow": cmd_follow,
        "listings": cmd_listings,
    }
    command = commands.get(args.command)
    if command is None:
        parser.print_help()
        sys.exit(1)

    try:
        command(args)
    except (RelayError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()

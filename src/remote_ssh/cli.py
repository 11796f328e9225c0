#!/usr/bin/env python3
"""
remote-ssh-bridge

Connects to a host over SSH, installs and starts the remote server, and keeps
a local tunnel to it open until interrupted:
1. Opens (or reuses) the SSH session
2. Detects the remote shell and runs the install script
3. Forwards a local port to the server and checks it answers
4. Optionally starts a local SOCKS listener through the same session
"""

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from dataclasses import replace
from pathlib import Path
from typing import List, Optional

from remote_ssh import __version__
from remote_ssh.connection import ConnectionDescriptor, RemoteConnection
from remote_ssh.errors import BootstrapError, RemoteSSHError
from remote_ssh.models import Credentials, RemoteAuthority
from remote_ssh.product import DEFAULT_QUALITY, ProductInfo, load_product_info
from remote_ssh.settings import MIN_CONNECT_TIMEOUT, VALID_PLATFORMS, load_settings

LOG_DIR = os.path.join(os.path.expanduser("~"), ".remote_ssh_logs")
LOG_FILE = os.path.join(LOG_DIR, "remote_ssh_bridge.log")

logger = logging.getLogger("remote_ssh.cli")


def setup_logging(debug: bool = False) -> None:
    """Log to stderr and to a file in a writable location"""
    os.makedirs(LOG_DIR, exist_ok=True)
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(LOG_FILE),
            logging.StreamHandler(sys.stderr)
        ]
    )
    # asyncssh logs every channel at INFO
    logging.getLogger("asyncssh").setLevel(logging.DEBUG if debug else logging.WARNING)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        prog="remote-ssh-bridge",
        description="Install a remote development server over SSH and tunnel to it"
    )

    parser.add_argument("authority",
                        help="Remote host to connect to ([user@]host[:port])")

    parser.add_argument("-i", "--identity-file", action="append", default=[],
                        help="Path to an SSH private key file (can be repeated)")

    parser.add_argument("--settings", default=None,
                        help="Path to the settings JSON file (default: ~/.config/remote-ssh-bridge/settings.json)")

    parser.add_argument("--product", default=None,
                        help="Path to product.json describing the server build")

    parser.add_argument("--commit", default=None,
                        help="Server commit (overrides product.json)")

    parser.add_argument("--server-version", default=None,
                        help="Server version (overrides product.json)")

    parser.add_argument("--quality", default=None,
                        help=f"Server quality (default: {DEFAULT_QUALITY})")

    parser.add_argument("--release", default=None,
                        help="Server release suffix used in the download URL")

    parser.add_argument("--platform", choices=VALID_PLATFORMS, default=None,
                        help="Remote platform, skips shell detection unless 'windows'")

    parser.add_argument("--listen-on-socket", action="store_true",
                        help="Make the server listen on a unix socket instead of a port")

    parser.add_argument("--extension", action="append", default=[],
                        help="Extension id to install on the server (can be repeated)")

    parser.add_argument("--env", action="append", default=[],
                        help="Remote environment variable to report back (can be repeated)")

    parser.add_argument("--no-dynamic-forwarding", action="store_true",
                        help="Do not start the local SOCKS listener")

    parser.add_argument("--connect-timeout", type=float, default=None,
                        help="Connect timeout in seconds (default: from settings, 60)")

    parser.add_argument("--no-strict-host-keys", action="store_true",
                        help="Do not verify the server host key against known_hosts")

    parser.add_argument("--json", action="store_true",
                        help="Print the connection descriptor as JSON")

    parser.add_argument("--debug", action="store_true",
                        help="Enable debug logging")

    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    return parser.parse_args(argv)


def build_product(args: argparse.Namespace) -> ProductInfo:
    """Load product.json and apply command line overrides"""
    if args.product:
        product = load_product_info(Path(args.product))
    elif args.commit and args.server_version:
        product = ProductInfo(version=args.server_version, commit=args.commit)
    else:
        raise ValueError("Either --product or both --commit and --server-version are required")

    overrides = {
        "commit": args.commit,
        "version": args.server_version,
        "quality": args.quality,
        "release": args.release,
    }
    return replace(product, **{key: value for key, value in overrides.items() if value})


def print_descriptor(descriptor: ConnectionDescriptor, as_json: bool = False) -> None:
    install = descriptor.install
    if as_json:
        print(json.dumps({
            "authority": str(descriptor.authority),
            "url": descriptor.url,
            "localPort": descriptor.local_port,
            "socksPort": descriptor.socks_port,
            "connectionToken": install.connection_token,
            "listeningOn": install.listening_on,
            "logFile": install.log_file,
            "osReleaseId": install.os_release_id,
            "arch": install.arch,
            "platform": install.platform,
            "tmpDir": install.tmp_dir,
            "env": install.env,
        }, indent=2), flush=True)
        return

    print(f"Connected to {descriptor.authority}")
    print(f"  Server:           {descriptor.url}/?tkn={install.connection_token}")
    print(f"  Remote listener:  {install.listening_on}")
    print(f"  Remote platform:  {install.platform} {install.arch} ({install.os_release_id})")
    print(f"  Remote log file:  {install.log_file}")
    if descriptor.socks_port:
        print(f"  SOCKS proxy:      127.0.0.1:{descriptor.socks_port}")
    for name, value in install.env.items():
        print(f"  {name}={value}")
    print("Press Ctrl+C to disconnect", flush=True)


async def run(args: argparse.Namespace) -> int:
    """Connect, then hold the tunnel until SIGINT/SIGTERM"""
    authority = RemoteAuthority.parse(args.authority)
    settings = load_settings(Path(args.settings) if args.settings else None)

    overrides = {}
    if args.connect_timeout is not None:
        if args.connect_timeout < MIN_CONNECT_TIMEOUT:
            raise ValueError(f"--connect-timeout must be at least {MIN_CONNECT_TIMEOUT}")
        overrides["connect_timeout"] = args.connect_timeout
    if args.no_dynamic_forwarding:
        overrides["enable_dynamic_forwarding"] = False
    if args.listen_on_socket:
        overrides["listen_on_socket"] = True
    if args.platform:
        overrides["remote_platform"] = {**settings.remote_platform, authority.host: args.platform}
    settings = replace(settings, **overrides)

    credentials = Credentials(
        identity_files=tuple(os.path.expanduser(path) for path in args.identity_file),
        strict_host_keys=not args.no_strict_host_keys,
    )

    connection = RemoteConnection(
        authority,
        build_product(args),
        settings=settings,
        credentials=credentials,
        extension_ids=args.extension,
        env_variables=args.env,
    )

    loop = asyncio.get_running_loop()
    stop = asyncio.Event()

    def signal_handler():
        print("\nShutting down...", file=sys.stderr)
        stop.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, signal_handler)
        except NotImplementedError:
            # Windows event loops have no add_signal_handler
            signal.signal(sig, lambda s, f: loop.call_soon_threadsafe(signal_handler))

    try:
        descriptor = await connection.open()
        print_descriptor(descriptor, args.json)
        await stop.wait()
    finally:
        await connection.close()
        logger.info("Cleanup complete")

    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point for the remote-ssh-bridge command"""
    args = parse_args(argv)
    setup_logging(args.debug)

    try:
        return asyncio.run(run(args))
    except BootstrapError as e:
        print(f"Error: {e}", file=sys.stderr)
        diagnostics = e.diagnostics()
        if diagnostics:
            logger.debug(f"Remote output:\n{diagnostics}")
        return 1
    except RemoteSSHError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except (ValueError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())

#!/usr/bin/env python3
"""
remote-ssh-bridge: remote development server over SSH

Main entry point for the remote-ssh-bridge package.
"""

import sys

from remote_ssh.cli import main as cli_main

def main():
    """Entry point for the remote-ssh-bridge package"""
    return cli_main()

if __name__ == "__main__":
    sys.exit(main())

"""Install and tunnel to a remote development server over SSH."""

__version__ = "0.1.0"

# Expose the connection entry points
from remote_ssh.connection import ConnectionDescriptor, RemoteConnection
from remote_ssh.models import Credentials, InstallOptions, InstallResult, RemoteAuthority
from remote_ssh.session import SessionManager
from remote_ssh.tunnel import TunnelManager

"""
Value types shared by the session, bootstrap and tunnel layers.
"""

import re
import secrets
from dataclasses import dataclass, field, replace
from typing import Dict, Optional, Tuple, Union

DEFAULT_SSH_PORT = 22

# [user@]host[:port], with optional brackets around IPv6 hosts
AUTHORITY_RE = re.compile(r"^(?:(?P<user>[^@]+)@)?(?:\[(?P<host6>[^\]]+)\]|(?P<host>[^:@\s]+))(?::(?P<port>\d+))?$")


@dataclass(frozen=True)
class RemoteAuthority:
    """Identity of an SSH-reachable host"""
    host: str
    port: int = DEFAULT_SSH_PORT
    user: Optional[str] = None

    @classmethod
    def parse(cls, value: str) -> "RemoteAuthority":
        """Parse a "[user@]host[:port]" string"""
        match = AUTHORITY_RE.match(value.strip())
        if not match:
            raise ValueError(f"Invalid remote authority: {value!r}")

        host = match.group("host6") or match.group("host")
        port = int(match.group("port")) if match.group("port") else DEFAULT_SSH_PORT
        if not 0 < port < 65536:
            raise ValueError(f"Invalid port in remote authority: {value!r}")

        return cls(host=host, port=port, user=match.group("user"))

    def __str__(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        user = f"{self.user}@" if self.user else ""
        port = f":{self.port}" if self.port != DEFAULT_SSH_PORT else ""
        return f"{user}{host}{port}"


@dataclass(frozen=True)
class Credentials:
    """How to authenticate against a remote authority"""
    identity_files: Tuple[str, ...] = ()
    password: Optional[str] = None
    agent_forwarding: bool = False
    strict_host_keys: bool = True
    use_ssh_config: bool = True


@dataclass(frozen=True)
class ExecResult:
    """Output of a remote command"""
    stdout: str
    stderr: str
    exit_code: int


def new_script_id() -> str:
    """Generate a random correlation marker for one install attempt"""
    return secrets.token_hex(12)


@dataclass(frozen=True)
class InstallOptions:
    """Everything the install script needs to know about one attempt"""
    quality: str
    version: str
    commit: str
    server_application_name: str
    server_data_folder_name: str
    server_download_url_template: str
    release: Optional[str] = None
    extension_ids: Tuple[str, ...] = ()
    env_variables: Tuple[str, ...] = ()
    use_socket_path: bool = False
    id: str = field(default_factory=new_script_id)

    def with_new_id(self) -> "InstallOptions":
        """Return a copy of these options with a fresh correlation marker"""
        return replace(self, id=new_script_id())


@dataclass(frozen=True)
class InstallResult:
    """Connection descriptor recovered from the install script output"""
    exit_code: int
    listening_on: Union[int, str]
    connection_token: str
    log_file: str
    os_release_id: str
    arch: str
    platform: str
    tmp_dir: str
    env: Dict[str, str] = field(default_factory=dict)

    @property
    def uses_socket_path(self) -> bool:
        """True when the server listens on a unix socket instead of a port"""
        return isinstance(self.listening_on, str)

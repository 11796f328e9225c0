"""
Error types raised while connecting, bootstrapping and tunneling.

Every error carries a human readable message. Bootstrap errors also carry the
remote stdout/stderr so callers can show what the install script printed.
"""

from typing import Optional


class RemoteSSHError(Exception):
    """Base class for all remote-ssh-bridge errors"""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class Unreachable(RemoteSSHError):
    """The host could not be reached or the transport went away"""


class SessionClosed(Unreachable):
    """An operation was attempted on a session that is no longer live"""


class AuthFailed(RemoteSSHError):
    """The SSH server rejected our credentials or host key"""


class Timeout(RemoteSSHError):
    """An operation did not complete within its time budget"""


class ForwardFailed(RemoteSSHError):
    """A port forward or forwarded connection could not be opened"""


class SettingsError(RemoteSSHError):
    """A settings value is missing or invalid"""


class BootstrapError(RemoteSSHError):
    """Base class for failures of the remote install script"""

    def __init__(self, message: str, stdout: str = "", stderr: str = ""):
        super().__init__(message)
        self.stdout = stdout
        self.stderr = stderr

    def diagnostics(self) -> str:
        """Return the captured remote output for logging"""
        parts = []
        if self.stdout:
            parts.append(f"stdout:\n{self.stdout}")
        if self.stderr:
            parts.append(f"stderr:\n{self.stderr}")
        return "\n".join(parts)


class UnsupportedPlatform(BootstrapError):
    """The remote kernel is not one we can install a server on"""


class UnsupportedArchitecture(BootstrapError):
    """The remote machine architecture has no server build"""


class CommandTooLong(BootstrapError):
    """The serialized cmd.exe command exceeds the command-line limit"""

    def __init__(self, length: int, limit: int):
        super().__init__(f"Command line too long: {length} characters (max {limit})")
        self.length = length
        self.limit = limit


class ParseError(BootstrapError):
    """The install script output did not contain a complete result block"""


class InstallFailed(BootstrapError):
    """The install script reported a non-zero exit code"""

    def __init__(self, message: str, stdout: str = "", stderr: str = "",
                 exit_code: Optional[int] = None):
        super().__init__(message, stdout, stderr)
        self.exit_code = exit_code

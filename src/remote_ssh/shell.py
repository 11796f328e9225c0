"""
Remote shell detection.

Windows hosts may answer SSH with PowerShell, cmd.exe or a MSYS bash; every
other supported host is treated as POSIX. The result decides which install
script is generated and how it is launched.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

logger = logging.getLogger("remote_ssh.shell")

PROBE_COMMAND = "uname -s"

POWERSHELL_NOT_FOUND = "FullyQualifiedErrorId : CommandNotFoundException"
CMD_NOT_RECOGNIZED = "is not recognized as an internal or external command"


class Shell(Enum):
    BASH = "bash"
    POWERSHELL = "powershell"
    CMD = "cmd"


@dataclass(frozen=True)
class ShellInfo:
    """Which shell the remote runs and which OS family it belongs to"""
    shell: Shell
    platform: Optional[str] = None
    via_bash: bool = False

    @property
    def is_windows(self) -> bool:
        return self.platform == "windows"


POSIX = ShellInfo(Shell.BASH)


def classify(stdout: str, stderr: str, platform_hint: Optional[str] = None) -> ShellInfo:
    """Classify probe output into a shell variant"""
    if stdout:
        if "windows32" in stdout:
            return ShellInfo(Shell.POWERSHELL, "windows")
        if "MINGW64" in stdout:
            # MSYS bash on Windows: the PowerShell script is launched from bash
            return ShellInfo(Shell.POWERSHELL, "windows", via_bash=True)
    elif stderr:
        if CMD_NOT_RECOGNIZED in stderr:
            return ShellInfo(Shell.CMD, "windows")
        if POWERSHELL_NOT_FOUND in stderr:
            return ShellInfo(Shell.POWERSHELL, "windows")

    if platform_hint == "windows":
        # Configured as Windows but the probe didn't say which shell
        return ShellInfo(Shell.POWERSHELL, "windows")

    return ShellInfo(Shell.BASH, platform_hint)


async def detect(manager, session, platform_hint: Optional[str] = None) -> ShellInfo:
    """Probe the remote shell once per session"""
    if session.shell_info is not None:
        return session.shell_info

    if platform_hint and platform_hint != "windows":
        info = ShellInfo(Shell.BASH, platform_hint)
    else:
        result = await manager.exec(session, PROBE_COMMAND)
        info = classify(result.stdout, result.stderr, platform_hint)

    logger.info(f"Detected shell on {session.authority}: {info.shell.value}"
                f" (platform={info.platform or 'posix'}{', via bash' if info.via_bash else ''})")
    session.shell_info = info
    return info

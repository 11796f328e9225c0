"""
Settings for remote-ssh-bridge

Settings live in a flat JSON file using the same keys as the Remote - SSH
editor extension, e.g.:

    {
        "remote.SSH.connectTimeout": 30,
        "remote.SSH.remotePlatform": {"build-box": "linux"}
    }
"""

import json
import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from remote_ssh.errors import SettingsError

logger = logging.getLogger("remote_ssh.settings")

VALID_PLATFORMS = ("linux", "macos", "windows", "aix")

MIN_CONNECT_TIMEOUT = 1
DEFAULT_CONNECT_TIMEOUT = 60


def get_settings_path() -> Path:
    """Get the default settings file path based on the OS"""
    if sys.platform == 'win32':
        app_data = os.environ.get('APPDATA', '')
        if app_data:
            return Path(app_data) / "remote-ssh-bridge" / "settings.json"

    config_home = os.environ.get('XDG_CONFIG_HOME') or str(Path.home() / '.config')
    return Path(config_home) / "remote-ssh-bridge" / "settings.json"


@dataclass(frozen=True)
class RemoteSSHSettings:
    """Configuration surface consumed by the connection engine"""
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    default_extensions: Tuple[str, ...] = ()
    enable_dynamic_forwarding: bool = True
    enable_agent_forwarding: bool = True
    listen_on_socket: bool = False
    server_binary_name: str = ""
    server_download_url_template: str = ""
    remote_platform: Dict[str, str] = field(default_factory=dict)

    def platform_for(self, host: str) -> Optional[str]:
        """Return the configured platform override for a host, if any"""
        return self.remote_platform.get(host)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RemoteSSHSettings":
        """Build settings from a mapping of "remote.SSH.*" keys"""
        timeout = data.get("remote.SSH.connectTimeout", DEFAULT_CONNECT_TIMEOUT)
        if isinstance(timeout, bool) or not isinstance(timeout, (int, float)):
            raise SettingsError(f"remote.SSH.connectTimeout must be a number, got {timeout!r}")
        if timeout < MIN_CONNECT_TIMEOUT:
            raise SettingsError(f"remote.SSH.connectTimeout must be at least {MIN_CONNECT_TIMEOUT}, got {timeout}")

        extensions = data.get("remote.SSH.defaultExtensions") or []
        if not isinstance(extensions, list) or not all(isinstance(e, str) for e in extensions):
            raise SettingsError("remote.SSH.defaultExtensions must be a list of strings")

        platforms = data.get("remote.SSH.remotePlatform") or {}
        if not isinstance(platforms, dict):
            raise SettingsError("remote.SSH.remotePlatform must be an object")
        for host, platform in platforms.items():
            if platform not in VALID_PLATFORMS:
                raise SettingsError(
                    f"Invalid platform {platform!r} for host {host!r}, expected one of {', '.join(VALID_PLATFORMS)}"
                )

        return cls(
            connect_timeout=float(timeout),
            default_extensions=tuple(extensions),
            enable_dynamic_forwarding=bool(data.get("remote.SSH.enableDynamicForwarding", True)),
            enable_agent_forwarding=bool(data.get("remote.SSH.enableAgentForwarding", True)),
            listen_on_socket=bool(data.get("remote.SSH.remoteServerListenOnSocket", False)),
            server_binary_name=data.get("remote.SSH.experimental.serverBinaryName") or "",
            server_download_url_template=data.get("remote.SSH.serverDownloadUrlTemplate") or "",
            remote_platform=dict(platforms),
        )


def load_settings(path: Optional[Path] = None) -> RemoteSSHSettings:
    """Read the settings file, falling back to defaults if it is missing or malformed"""
    settings_path = Path(path) if path else get_settings_path()

    if not settings_path.exists():
        logger.debug(f"No settings file at {settings_path}, using defaults")
        return RemoteSSHSettings()

    try:
        with open(settings_path, 'r') as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        logger.warning(f"Malformed settings file at {settings_path}: {e}. Using defaults.")
        return RemoteSSHSettings()

    if not isinstance(data, dict):
        logger.warning(f"Settings file at {settings_path} is not a JSON object. Using defaults.")
        return RemoteSSHSettings()

    logger.info(f"Loaded settings from {settings_path}")
    return RemoteSSHSettings.from_dict(data)

"""
Server release information read from the client's product.json.
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

from remote_ssh.models import InstallOptions
from remote_ssh.settings import RemoteSSHSettings

logger = logging.getLogger("remote_ssh.product")

DEFAULT_DOWNLOAD_URL_TEMPLATE = (
    "https://github.com/VSCodium/vscodium/releases/download/${version}.${release}/"
    "vscodium-reh-${os}-${arch}-${version}.${release}.tar.gz"
)
DEFAULT_QUALITY = "stable"
DEFAULT_SERVER_APPLICATION_NAME = "codium-server"
DEFAULT_SERVER_DATA_FOLDER_NAME = ".vscodium-server"


@dataclass(frozen=True)
class ProductInfo:
    """The server build a client expects to talk to"""
    version: str
    commit: str
    quality: str = DEFAULT_QUALITY
    release: Optional[str] = None
    server_application_name: str = DEFAULT_SERVER_APPLICATION_NAME
    server_data_folder_name: str = DEFAULT_SERVER_DATA_FOLDER_NAME
    server_download_url_template: Optional[str] = None

    def install_options(self, settings: RemoteSSHSettings, extension_ids: Iterable[str] = (),
                        env_variables: Iterable[str] = ()) -> InstallOptions:
        """Combine product info and settings into options for one install attempt"""
        extensions = list(settings.default_extensions)
        for extension_id in extension_ids:
            if extension_id not in extensions:
                extensions.append(extension_id)

        return InstallOptions(
            quality=self.quality,
            version=self.version,
            commit=self.commit,
            release=self.release,
            server_application_name=settings.server_binary_name or self.server_application_name,
            server_data_folder_name=self.server_data_folder_name,
            server_download_url_template=(settings.server_download_url_template
                                          or self.server_download_url_template
                                          or DEFAULT_DOWNLOAD_URL_TEMPLATE),
            extension_ids=tuple(extensions),
            env_variables=tuple(env_variables),
            use_socket_path=settings.listen_on_socket,
        )


def load_product_info(path: Path) -> ProductInfo:
    """Read a product.json file"""
    with open(path, 'r') as f:
        data = json.load(f)

    for key in ("version", "commit"):
        if not data.get(key):
            raise ValueError(f"{path} is missing required key {key!r}")

    logger.debug(f"Loaded product info from {path}: version={data['version']} commit={data['commit']}")

    return ProductInfo(
        version=data["version"],
        commit=data["commit"],
        quality=data.get("quality") or DEFAULT_QUALITY,
        release=data.get("release"),
        server_application_name=data.get("serverApplicationName") or DEFAULT_SERVER_APPLICATION_NAME,
        server_data_folder_name=data.get("serverDataFolderName") or DEFAULT_SERVER_DATA_FOLDER_NAME,
        server_download_url_template=data.get("serverDownloadUrlTemplate"),
    )

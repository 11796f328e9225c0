"""Tests for settings and product.json loading."""

import json

import pytest

from remote_ssh.errors import SettingsError
from remote_ssh.product import DEFAULT_DOWNLOAD_URL_TEMPLATE, ProductInfo, load_product_info
from remote_ssh.settings import RemoteSSHSettings, get_settings_path, load_settings


class TestSettings:
    """Tests for RemoteSSHSettings."""

    def test_defaults(self):
        settings = RemoteSSHSettings.from_dict({})
        assert settings.connect_timeout == 60
        assert settings.enable_dynamic_forwarding is True
        assert settings.listen_on_socket is False
        assert settings.default_extensions == ()

    def test_reads_remote_ssh_keys(self):
        settings = RemoteSSHSettings.from_dict({
            "remote.SSH.connectTimeout": 15,
            "remote.SSH.defaultExtensions": ["ms-python.python"],
            "remote.SSH.enableDynamicForwarding": False,
            "remote.SSH.remoteServerListenOnSocket": True,
            "remote.SSH.experimental.serverBinaryName": "custom-server",
            "remote.SSH.remotePlatform": {"win-box": "windows"},
        })
        assert settings.connect_timeout == 15
        assert settings.default_extensions == ("ms-python.python",)
        assert settings.enable_dynamic_forwarding is False
        assert settings.listen_on_socket is True
        assert settings.server_binary_name == "custom-server"
        assert settings.platform_for("win-box") == "windows"
        assert settings.platform_for("other") is None

    @pytest.mark.parametrize("timeout", [0, 0.5, -3, "60", True])
    def test_invalid_timeout(self, timeout):
        with pytest.raises(SettingsError):
            RemoteSSHSettings.from_dict({"remote.SSH.connectTimeout": timeout})

    def test_invalid_platform(self):
        with pytest.raises(SettingsError, match="solaris"):
            RemoteSSHSettings.from_dict({"remote.SSH.remotePlatform": {"box": "solaris"}})

    def test_invalid_extensions(self):
        with pytest.raises(SettingsError):
            RemoteSSHSettings.from_dict({"remote.SSH.defaultExtensions": "ms-python.python"})


class TestLoadSettings:

    def test_missing_file_gives_defaults(self, tmp_path):
        assert load_settings(tmp_path / "missing.json") == RemoteSSHSettings()

    def test_malformed_file_gives_defaults(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text("{not json")
        assert load_settings(path) == RemoteSSHSettings()

    def test_non_object_gives_defaults(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text("[1, 2]")
        assert load_settings(path) == RemoteSSHSettings()

    def test_invalid_value_raises(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"remote.SSH.connectTimeout": 0}))
        with pytest.raises(SettingsError):
            load_settings(path)

    def test_valid_file(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"remote.SSH.connectTimeout": 5}))
        assert load_settings(path).connect_timeout == 5

    def test_default_path_honours_xdg(self, tmp_path, monkeypatch):
        monkeypatch.setattr("sys.platform", "linux")
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
        assert get_settings_path() == tmp_path / "remote-ssh-bridge" / "settings.json"


class TestProductInfo:
    """Tests for product.json handling."""

    def test_load(self, tmp_path):
        path = tmp_path / "product.json"
        path.write_text(json.dumps({
            "version": "1.90.0",
            "commit": "abc123",
            "release": "24123",
            "serverApplicationName": "codium-server",
        }))
        product = load_product_info(path)
        assert product.version == "1.90.0"
        assert product.quality == "stable"
        assert product.release == "24123"
        assert product.server_data_folder_name == ".vscodium-server"

    def test_missing_commit(self, tmp_path):
        path = tmp_path / "product.json"
        path.write_text(json.dumps({"version": "1.90.0"}))
        with pytest.raises(ValueError, match="commit"):
            load_product_info(path)

    def test_install_options_merge_settings(self):
        product = ProductInfo(version="1.90.0", commit="abc123",
                              server_download_url_template="https://product/${version}")
        settings = RemoteSSHSettings(default_extensions=("a.one", "b.two"), listen_on_socket=True,
                                     server_binary_name="custom-server")

        options = product.install_options(settings, extension_ids=["b.two", "c.three"], env_variables=["PATH"])

        assert options.extension_ids == ("a.one", "b.two", "c.three")
        assert options.env_variables == ("PATH",)
        assert options.use_socket_path is True
        assert options.server_application_name == "custom-server"
        assert options.server_download_url_template == "https://product/${version}"

    def test_download_template_precedence(self):
        product = ProductInfo(version="1.90.0", commit="abc123")
        assert product.install_options(RemoteSSHSettings()).server_download_url_template == \
            DEFAULT_DOWNLOAD_URL_TEMPLATE

        settings = RemoteSSHSettings(server_download_url_template="https://settings/${commit}")
        assert product.install_options(settings).server_download_url_template == "https://settings/${commit}"

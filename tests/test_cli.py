"""Tests for the remote-ssh-bridge command line."""

import json

import pytest

from remote_ssh import cli


@pytest.fixture(autouse=True)
def log_dir(tmp_path, monkeypatch):
    """Keep log files out of the home directory"""
    monkeypatch.setattr(cli, "LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setattr(cli, "LOG_FILE", str(tmp_path / "logs" / "remote_ssh_bridge.log"))


def test_parse_args_defaults():
    args = cli.parse_args(["dev@build-box"])
    assert args.authority == "dev@build-box"
    assert args.identity_file == []
    assert args.extension == []
    assert not args.no_dynamic_forwarding
    assert args.connect_timeout is None


def test_parse_args_repeated_flags():
    args = cli.parse_args(["box", "-i", "~/.ssh/a", "-i", "~/.ssh/b", "--extension", "x.y",
                           "--env", "PATH", "--platform", "windows", "--debug"])
    assert args.identity_file == ["~/.ssh/a", "~/.ssh/b"]
    assert args.extension == ["x.y"]
    assert args.env == ["PATH"]
    assert args.platform == "windows"
    assert args.debug


def test_invalid_platform_rejected():
    with pytest.raises(SystemExit):
        cli.parse_args(["box", "--platform", "plan9"])


def test_build_product_from_file_with_overrides(tmp_path):
    path = tmp_path / "product.json"
    path.write_text(json.dumps({"version": "1.90.0", "commit": "abc123", "quality": "stable"}))
    args = cli.parse_args(["box", "--product", str(path), "--quality", "insider"])

    product = cli.build_product(args)

    assert product.commit == "abc123"
    assert product.quality == "insider"


def test_build_product_from_flags():
    args = cli.parse_args(["box", "--commit", "abc123", "--server-version", "1.90.0"])
    product = cli.build_product(args)
    assert (product.version, product.commit) == ("1.90.0", "abc123")


def test_build_product_requires_source():
    with pytest.raises(ValueError):
        cli.build_product(cli.parse_args(["box"]))


def test_main_reports_errors(tmp_path, capsys):
    exit_code = cli.main(["box", "--settings", str(tmp_path / "missing.json")])

    assert exit_code == 1
    assert "Either --product or both --commit and --server-version are required" in capsys.readouterr().err


def test_main_rejects_bad_authority(tmp_path, capsys):
    exit_code = cli.main(["user@", "--settings", str(tmp_path / "missing.json")])

    assert exit_code == 1
    assert "Invalid remote authority" in capsys.readouterr().err

"""Tests for remote shell detection."""

import pytest

from conftest import FakeConnection, FakeProcess, make_connect
from remote_ssh.session import SessionManager
from remote_ssh.shell import Shell, classify, detect

CMD_STDERR = ("'uname' is not recognized as an internal or external command,\r\n"
              "operable program or batch file.\r\n")
POWERSHELL_STDERR = ("uname : The term 'uname' is not recognized as the name of a cmdlet\r\n"
                     "    + FullyQualifiedErrorId : CommandNotFoundException\r\n")


class TestClassify:
    """Tests for classifying probe output."""

    def test_linux(self):
        info = classify("Linux\n", "", None)
        assert info.shell is Shell.BASH
        assert not info.is_windows

    def test_windows32(self):
        info = classify("windows32\n", "", None)
        assert info.shell is Shell.POWERSHELL
        assert info.is_windows
        assert not info.via_bash

    def test_mingw_goes_through_bash(self):
        info = classify("MINGW64_NT-10.0-19045\n", "", None)
        assert info.shell is Shell.POWERSHELL
        assert info.via_bash

    def test_cmd(self):
        info = classify("", CMD_STDERR, None)
        assert info.shell is Shell.CMD
        assert info.is_windows

    def test_powershell(self):
        assert classify("", POWERSHELL_STDERR, None).shell is Shell.POWERSHELL

    def test_windows_hint_without_signature(self):
        assert classify("", "", "windows").shell is Shell.POWERSHELL

    def test_unknown_output_is_posix(self):
        assert classify("FreeBSD\n", "", None).shell is Shell.BASH


class TestDetect:

    @pytest.mark.asyncio
    async def test_non_windows_override_skips_probe(self, authority, connection, manager):
        session = await manager.connect(authority)

        info = await detect(manager, session, "linux")

        assert info.shell is Shell.BASH
        assert info.platform == "linux"
        assert connection.commands == []

    @pytest.mark.asyncio
    async def test_cmd_detected_from_stderr(self, authority):
        connection = FakeConnection(lambda command: FakeProcess([], [CMD_STDERR], exit_status=1))
        manager = SessionManager(connect=make_connect(connection))
        session = await manager.connect(authority)

        info = await detect(manager, session, "windows")

        assert info.shell is Shell.CMD
        assert connection.commands == ["uname -s"]

    @pytest.mark.asyncio
    async def test_result_cached_per_session(self, authority, connection, manager):
        session = await manager.connect(authority)

        first = await detect(manager, session)
        second = await detect(manager, session)

        assert first is second
        assert connection.commands == ["uname -s"]

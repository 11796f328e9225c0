"""
Bootstrap protocol: wrap the install script for the remote shell, run it and
turn its result block into an InstallResult.
"""

import logging
import re
from typing import Dict, List, Mapping, Optional, Tuple

from remote_ssh.bootstrap.scripts import generate_bash_script, generate_powershell_script
from remote_ssh.errors import (CommandTooLong, InstallFailed, ParseError, UnsupportedArchitecture,
                               UnsupportedPlatform)
from remote_ssh.models import ExecResult, InstallOptions, InstallResult
from remote_ssh.shell import Shell, ShellInfo

logger = logging.getLogger("remote_ssh.bootstrap")

# cmd.exe command-line limit
CMD_MAX_LENGTH = 8191

KEY_VALUE_SEPARATOR = "=="

UNSUPPORTED_PLATFORM_PREFIXES = ("Error platform not supported",)
UNSUPPORTED_ARCH_PREFIXES = ("Error architecture not supported", "Error AIX architecture not supported")


def start_marker(marker: str) -> str:
    return f"{marker}: start"


def end_marker(marker: str) -> str:
    return f"{marker}: end"


def render_result_block(marker: str, mapping: Mapping[str, object]) -> str:
    """Render a result block in the same format the install scripts print"""
    lines = [start_marker(marker)]
    for key, value in mapping.items():
        lines.append(f"{key}{KEY_VALUE_SEPARATOR}{value}{KEY_VALUE_SEPARATOR}")
    lines.append(end_marker(marker))
    return "\n".join(lines) + "\n"


def parse_install_output(stdout: str, marker: str) -> Dict[str, str]:
    """
    Extract the key/value pairs between the start and end markers.

    Raises ParseError if either marker is missing.
    """
    start = start_marker(marker)
    end = end_marker(marker)

    start_index = stdout.find(start)
    if start_index < 0:
        raise ParseError(f"Install output is missing the start marker {start!r}", stdout)

    body_index = start_index + len(start)
    end_index = stdout.find(end, body_index)
    if end_index < 0:
        raise ParseError(f"Install output is missing the end marker {end!r}", stdout)

    result: Dict[str, str] = {}
    for line in stdout[body_index:end_index].splitlines():
        line = line.strip()
        if not line or KEY_VALUE_SEPARATOR not in line:
            continue
        key, _, rest = line.partition(KEY_VALUE_SEPARATOR)
        if rest.endswith(KEY_VALUE_SEPARATOR):
            rest = rest[:-len(KEY_VALUE_SEPARATOR)]
        result[key] = rest
    return result


def _error_lines(stdout: str) -> List[str]:
    return [line.strip() for line in stdout.splitlines() if line.strip().startswith("Error")]


def _raise_for_failure(exit_code: int, output: ExecResult) -> None:
    errors = _error_lines(output.stdout)
    message = errors[0] if errors else f"Install script exited with code {exit_code}"

    if any(line.startswith(UNSUPPORTED_PLATFORM_PREFIXES) for line in errors):
        raise UnsupportedPlatform(message, output.stdout, output.stderr)
    if any(line.startswith(UNSUPPORTED_ARCH_PREFIXES) for line in errors):
        raise UnsupportedArchitecture(message, output.stdout, output.stderr)
    raise InstallFailed(message, output.stdout, output.stderr, exit_code)


def result_from_map(values: Mapping[str, str], options: InstallOptions,
                    output: Optional[ExecResult] = None) -> InstallResult:
    """Convert parsed key/value pairs into an InstallResult"""
    output = output or ExecResult("", "", 0)

    raw_exit_code = values.get("exitCode", "")
    try:
        exit_code = int(raw_exit_code)
    except ValueError:
        raise ParseError(f"Invalid exitCode in install output: {raw_exit_code!r}", output.stdout, output.stderr)

    if exit_code != 0:
        _raise_for_failure(exit_code, output)

    listening_on = values.get("listeningOn", "")
    if not listening_on:
        raise ParseError("Install output did not report where the server is listening",
                         output.stdout, output.stderr)

    return InstallResult(
        exit_code=exit_code,
        listening_on=int(listening_on) if listening_on.isdigit() else listening_on,
        connection_token=values.get("connectionToken", ""),
        log_file=values.get("logFile", ""),
        os_release_id=values.get("osReleaseId", ""),
        arch=values.get("arch", ""),
        platform=values.get("platform", ""),
        tmp_dir=values.get("tmpDir", ""),
        env={name: values[name] for name in options.env_variables if name in values},
    )


def _install_paths(options: InstallOptions) -> Tuple[str, str]:
    install_dir = f"$HOME\\{options.server_data_folder_name}\\install"
    install_script = f"{install_dir}\\{options.commit}.ps1"
    return install_dir, install_script


def _cmd_escape(script: str) -> str:
    script = re.sub(r"^#.*$", "", script.strip(), flags=re.MULTILINE)
    script = re.sub(r"\n{2,}", "\n", script)
    script = re.sub(r"^\s+", "", script, flags=re.MULTILINE)
    return (script.replace('"', '"""')
                  .replace("'", "''")
                  .replace(">", "^>")
                  .replace("\n", "'`n'"))


def build_command(shell_info: ShellInfo, options: InstallOptions, script: str) -> str:
    """
    Wrap a generated script into a single command for the remote shell.

    Raises CommandTooLong for cmd.exe commands over the command-line limit.
    """
    if shell_info.shell is Shell.BASH:
        escaped = script.replace("'", "'\\''")
        return f"bash -c '{escaped}'"

    install_dir, install_script = _install_paths(options)

    if shell_info.shell is Shell.POWERSHELL and shell_info.via_bash:
        escaped = script.replace("'", "'\"'\"'")
        return (f"mkdir -p {install_dir.replace(chr(92), '/')} && "
                f"echo '\n{escaped}\n' > {install_script.replace(chr(92), '/')} && "
                f"powershell -ExecutionPolicy ByPass -File \"{install_script}\"")

    if shell_info.shell is Shell.POWERSHELL:
        return (f"md -Force {install_dir}; "
                f"echo @'\n{script}\n'@ | Set-Content {install_script}; "
                f"powershell -ExecutionPolicy ByPass -File \"{install_script}\"")

    script_path = install_script.replace("$HOME", "%USERPROFILE%")
    command = (f"powershell \"md -Force {install_dir}\" && "
               f"powershell \"echo '{_cmd_escape(script)}'\" > {script_path} && "
               f"powershell -ExecutionPolicy ByPass -File \"{script_path}\"")
    if len(command) > CMD_MAX_LENGTH:
        raise CommandTooLong(len(command), CMD_MAX_LENGTH)
    return command


def generate_script(shell_info: ShellInfo, options: InstallOptions) -> str:
    """Generate the install script matching the remote shell"""
    if shell_info.shell is Shell.BASH:
        return generate_bash_script(options)
    return generate_powershell_script(options)


async def bootstrap(manager, session, options: InstallOptions, shell_info: ShellInfo,
                    timeout: Optional[float] = None) -> InstallResult:
    """Install (if needed) and start the remote server, returning its descriptor"""
    async with manager.bootstrap_lock(session.authority):
        script = generate_script(shell_info, options)
        command = build_command(shell_info, options, script)

        logger.info(f"Bootstrapping server {options.commit[:8]} on {session.authority} "
                    f"({shell_info.shell.value})")
        logger.debug(f"Install script ({options.id}):\n{script}")

        if shell_info.is_windows:
            marker = end_marker(options.id)
            output = await manager.exec_until(session, command, lambda stdout: marker in stdout, timeout=timeout)
        else:
            output = await manager.exec(session, command)

        logger.debug(f"Install script stdout:\n{output.stdout}")
        if output.stderr:
            logger.debug(f"Install script stderr:\n{output.stderr}")

        try:
            values = parse_install_output(output.stdout, options.id)
        except ParseError as e:
            raise ParseError(e.message, output.stdout, output.stderr) from e

        result = result_from_map(values, options, output)
        logger.info(f"Server on {session.authority} listening on {result.listening_on}")
        return result

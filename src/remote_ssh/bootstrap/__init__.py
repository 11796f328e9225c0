"""
Remote server bootstrap: script generation and result parsing
"""

from remote_ssh.bootstrap.protocol import (CMD_MAX_LENGTH, bootstrap, build_command, generate_script,
                                           parse_install_output, render_result_block, result_from_map)
from remote_ssh.bootstrap.scripts import generate_bash_script, generate_powershell_script

__all__ = [
    "CMD_MAX_LENGTH",
    "bootstrap",
    "build_command",
    "generate_script",
    "generate_bash_script",
    "generate_powershell_script",
    "parse_install_output",
    "render_result_block",
    "result_from_map",
]

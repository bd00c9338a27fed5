# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
backupflow Process - Runner for external dump and restore tools.

mongodump, mongorestore and pg_basebackup are driven as subprocesses.
Output is collected rather than parsed; a non-zero exit raises ToolError.
"""

import asyncio
import re
from typing import Dict, List, Sequence

import structlog

from backupflow.exceptions import ToolError

logger = structlog.get_logger()

_URL_PASSWORD = re.compile(r"(?P<scheme>[a-zA-Z][a-zA-Z0-9+.-]*://)(?P<user>[^:/@\s]+):(?P<pw>[^@\s]+)@")

# Maximum stderr kept on ToolError
_STDERR_LIMIT = 4000


def mask_secrets(text: str) -> str:
    """Replace passwords embedded in connection URLs with '***'."""
    return _URL_PASSWORD.sub(lambda m: f"{m.group('scheme')}{m.group('user')}:***@", text)


def render_command(args: Sequence[str]) -> str:
    """Command line suitable for logs."""
    return " ".join(mask_secrets(str(a)) for a in args)


async def run_tool(
    args: Sequence[str],
    env: Dict[str, str] | None = None,
    cwd: str | None = None,
) -> str:
    """
    Run an external tool to completion.

    Cancelling the awaiting task kills the child process.

    Args:
        args: Program and arguments
        env: Environment for the child (None inherits)
        cwd: Working directory

    Returns:
        Captured stdout

    Raises:
        ToolError: If the program is missing or exits non-zero
    """
    argv: List[str] = [str(a) for a in args]
    command = render_command(argv)
    logger.debug("tool_started", command=command)

    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
            cwd=cwd,
        )
    except FileNotFoundError as e:
        raise ToolError(
            f"Tool not found: {argv[0]}",
            details={"command": command, "error": str(e)},
        )

    try:
        stdout, stderr = await proc.communicate()
    except asyncio.CancelledError:
        if proc.returncode is None:
            proc.kill()
            await proc.wait()
        logger.warning("tool_cancelled", command=command)
        raise

    err_text = mask_secrets(stderr.decode(errors="replace"))
    if proc.returncode != 0:
        logger.error("tool_failed", command=command, returncode=proc.returncode)
        raise ToolError(
            f"{argv[0]} exited with code {proc.returncode}",
            returncode=proc.returncode,
            stderr=err_text[-_STDERR_LIMIT:],
            details={"command": command},
        )

    logger.debug("tool_finished", command=command)
    return stdout.decode(errors="replace")

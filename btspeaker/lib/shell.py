# BT Speaker
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
Async wrappers around the command-line tools the sources poll.

run_output() returns None when the tool broke (missing binary, non-zero exit,
timeout) and its stdout otherwise, so enumerating callers can tell "tool
failed" from "tool had nothing to say".  run_command() folds both into "".
"""

import asyncio
import logging
import shutil

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0


async def run_output(*args: str, timeout: float = DEFAULT_TIMEOUT,
                     stdin: str | None = None) -> str | None:
    """Run *args* and return stdout, or None on any failure."""
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        logger.debug("%s not found", args[0])
        return None
    except (OSError, ValueError) as e:
        logger.debug("Cannot run %s: %s", args[0], e)
        return None

    try:
        stdout, stderr = await asyncio.wait_for(
            proc.communicate(stdin.encode() if stdin is not None else None),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        logger.debug("%s timed out after %.1fs", args[0], timeout)
        await _kill(proc)
        return None

    if proc.returncode != 0:
        logger.debug("%s failed (rc=%d): %s", " ".join(args), proc.returncode,
                     stderr.decode(errors="replace").strip())
        return None
    return stdout.decode(errors="replace")


async def run_command(*args: str, timeout: float = DEFAULT_TIMEOUT,
                      stdin: str | None = None) -> str:
    """Run *args* and return stdout, or "" on any failure."""
    return await run_output(*args, timeout=timeout, stdin=stdin) or ""


async def run_checked(*args: str, timeout: float = 30.0, stdin: str | None = None) -> None:
    """Run *args*, raising OSError on a missing binary, bad arguments, timeout
    or non-zero exit.

    Used where the caller needs to know that something failed (speech
    rendering falls back to another engine on failure).
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
    except ValueError as e:
        raise OSError(f"cannot run {args[0]}: {e}") from e
    try:
        _, stderr = await asyncio.wait_for(
            proc.communicate(stdin.encode() if stdin is not None else None),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        await _kill(proc)
        raise OSError(f"{args[0]} timed out after {timeout:.0f}s")
    if proc.returncode != 0:
        raise OSError(f"{args[0]} exited with {proc.returncode}: "
                      f"{stderr.decode(errors='replace').strip()}")


async def read_file(path: str) -> str:
    """Read a small text file (e.g. under /proc) without blocking the loop."""
    loop = asyncio.get_running_loop()
    try:
        return await loop.run_in_executor(None, _read, path)
    except OSError as e:
        logger.debug("Cannot read %s: %s", path, e)
        return ""


def _read(path: str) -> str:
    with open(path) as f:
        return f.read()


def have_binary(name: str) -> bool:
    return shutil.which(name) is not None


async def _kill(proc: asyncio.subprocess.Process) -> None:
    try:
        proc.kill()
    except ProcessLookupError:
        pass
    await proc.wait()

"""Library for issuing commands using asyncio and returning the result."""

import asyncio
from dataclasses import dataclass
import logging
import os
from pathlib import Path
import shlex
import subprocess

from .exceptions import CommandException

_LOGGER = logging.getLogger(__name__)

_CONCURRENCY = 20
_SEM = asyncio.Semaphore(_CONCURRENCY)
_TIMEOUT = 60.0


# No public API
__all__: list[str] = []


@dataclass
class Command:
    """An instance of a command to run."""

    cmd: list[str]
    """Array of command line arguments."""

    cwd: Path | None = None
    """Current working directory."""

    exc: type[CommandException] = CommandException
    """Exception to throw in case of an error."""

    env: dict[str, str] | None = None
    """Environment variables for the subprocess."""

    timeout: float = _TIMEOUT
    """Seconds to wait for the command to complete."""

    @property
    def string(self) -> str:
        """Render the command as a single string."""
        return " ".join([shlex.quote(arg) for arg in self.cmd])

    def __str__(self) -> str:
        """Render as a debug string."""
        if self.cwd:
            return f"({self.cwd}) {self.string}"
        return self.string

    async def run(self, stdin: bytes | None = None) -> bytes:
        """Run the command, returning stdout."""
        _LOGGER.debug("Running command: %s", self)
        env = {
            **os.environ,
            **(self.env if self.env else {}),
        }
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=self.cwd,
                env=env,
            )
        except OSError as err:
            raise self.exc(f"Command '{self}' could not be started: {err}") from err
        out, err = await proc.communicate(stdin)
        if proc.returncode:
            errors = [f"Command '{self}' failed with return code {proc.returncode}"]
            if out:
                errors.append(out.decode("utf-8"))
            if err:
                errors.append(err.decode("utf-8"))
            _LOGGER.debug("\n".join(errors))
            raise self.exc("\n".join(errors))
        return out


async def run(cmd: Command, stdin: str | None = None) -> str:
    """Run the specified command and return stdout."""
    async with _SEM:
        try:
            out = await asyncio.wait_for(
                cmd.run(stdin.encode("utf-8") if stdin is not None else None),
                cmd.timeout,
            )
        except asyncio.TimeoutError as err:
            raise cmd.exc(f"Command '{cmd}' timed out") from err
    return out.decode("utf-8") if out else ""

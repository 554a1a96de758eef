"""Library for running external programs (flux, gpg) with asyncio."""

import asyncio
import logging
import os
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path

from .context import remaining
from .exceptions import CommandException

_LOGGER = logging.getLogger(__name__)

# Upper bound for a single subprocess when no operation deadline is set
_DEFAULT_TIMEOUT = 120.0


__all__ = [
    "Command",
    "run",
]


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
    """Extra environment variables for the subprocess."""

    redact: list[str] | None = None
    """Argument values that must not appear in logs or error messages."""

    @property
    def string(self) -> str:
        """Render the command as a single string."""
        return " ".join([shlex.quote(arg) for arg in self.cmd])

    def __str__(self) -> str:
        """Render as a debug string."""
        text = self.string
        for secret in self.redact or ():
            text = text.replace(secret, "***")
        if self.cwd:
            return f"({self.cwd}) {text}"
        return text

    async def run(self, stdin: bytes | None = None) -> bytes:
        """Run the command, returning stdout."""
        _LOGGER.debug("Running command: %s", self)
        env = {
            **os.environ,
            **(self.env if self.env else {}),
        }
        proc = await asyncio.create_subprocess_exec(
            *self.cmd,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=self.cwd,
            env=env,
        )
        out, err = await proc.communicate(stdin)
        if proc.returncode:
            errors = [f"Command '{self}' failed with return code {proc.returncode}"]
            if out:
                errors.append(out.decode("utf-8", errors="replace"))
            if err:
                errors.append(err.decode("utf-8", errors="replace"))
            _LOGGER.debug("\n".join(errors))
            raise self.exc("\n".join(errors))
        return out


async def run(cmd: Command, stdin: bytes | None = None) -> bytes:
    """Run the specified command, bounded by the operation deadline."""
    timeout = remaining()
    if timeout is None:
        timeout = _DEFAULT_TIMEOUT
    try:
        return await asyncio.wait_for(cmd.run(stdin), timeout)
    except FileNotFoundError as err:
        raise cmd.exc(f"Command '{cmd}' failed: {err}") from err
    except asyncio.TimeoutError as err:
        raise cmd.exc(f"Command '{cmd}' timed out") from err

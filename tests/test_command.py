"""Tests for command library."""

import pytest

from flux_bootstrap.command import Command, run
from flux_bootstrap.context import deadline_context
from flux_bootstrap.exceptions import CommandException, SigningException


async def test_command() -> None:
    """Test stdout parsing of a command."""
    result = await run(Command(["echo", "Hello"]))
    assert result == b"Hello\n"


async def test_command_stdin() -> None:
    """Test input is passed to the command."""
    result = await run(Command(["cat"]), stdin=b"payload")
    assert result == b"payload"


async def test_command_env() -> None:
    """Test extra environment variables."""
    result = await run(Command(["sh", "-c", "echo $GREETING"], env={"GREETING": "hi"}))
    assert result == b"hi\n"


async def test_failed_command() -> None:
    """Test a failing command."""
    with pytest.raises(CommandException, match="return code 1"):
        await run(Command(["/bin/false"]))


async def test_failed_command_exc() -> None:
    """Test a failing command raises the requested exception."""
    with pytest.raises(SigningException, match="not-a-real-binary"):
        await run(Command(["not-a-real-binary"], exc=SigningException))


async def test_redacted_command() -> None:
    """Test secrets are removed from the error message."""
    with pytest.raises(CommandException) as exc_info:
        await run(Command(["sh", "-c", "exit 3", "s3cret"], redact=["s3cret"]))
    assert "s3cret" not in str(exc_info.value)
    assert "***" in str(exc_info.value)


async def test_command_deadline() -> None:
    """Test a command is stopped at the operation deadline."""
    with deadline_context(0.1), pytest.raises(CommandException, match="timed out"):
        await run(Command(["sleep", "5"]))

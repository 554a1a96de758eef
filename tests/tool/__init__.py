"""Test helpers for flux-bootstrap tools."""

from flux_bootstrap.command import Command, run

FLUX_BOOTSTRAP_BIN = "flux-bootstrap"


async def run_command(args: list[str], env: dict[str, str] | None = None) -> str:
    out = await run(Command([FLUX_BOOTSTRAP_BIN] + args, env=env))
    return out.decode("utf-8")

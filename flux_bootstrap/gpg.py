"""Commit signing with an OpenPGP key ring using the gpg command line."""

from dataclasses import dataclass
import logging
from pathlib import Path
import tempfile

from .command import Command, run
from .exceptions import CommandException, SigningException

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "CommitSigner",
    "normalize_key_id",
    "embed_signature",
]

KEY_ID_LENGTH = 16


def normalize_key_id(key_id: str) -> str:
    """Return the 16 character upper case form of a long key id."""
    value = key_id.strip()
    if value.lower().startswith("0x"):
        value = value[2:]
    if len(value) != KEY_ID_LENGTH:
        raise SigningException(
            f"GPG key id '{key_id}' must be {KEY_ID_LENGTH} hex characters long"
        )
    return value.upper()


def parse_secret_key_ids(listing: str) -> list[str]:
    """Return the primary secret key ids from `gpg --with-colons` output."""
    ids = []
    for line in listing.splitlines():
        fields = line.split(":")
        if fields[0] == "sec" and len(fields) > 4:
            ids.append(fields[4].upper())
    return ids


def embed_signature(raw_commit: bytes, signature: str) -> bytes:
    """Add a `gpgsig` header to a raw commit object."""
    header, sep, message = raw_commit.partition(b"\n\n")
    lines = signature.strip("\n").split("\n")
    gpgsig = "gpgsig " + "\n".join(
        [lines[0]] + [f" {line}" for line in lines[1:]]
    )
    return header + b"\n" + gpgsig.encode("utf-8") + sep + message


@dataclass
class CommitSigner:
    """Signs commit payloads with a key from an armored key ring."""

    key_ring: str
    """Armored private key ring."""

    passphrase: str | None = None
    """Passphrase protecting the key."""

    key_id: str | None = None
    """Long key id of the signing key, the first key when unset."""

    def _gpg(self, home: Path, *args: str) -> Command:
        return Command(
            ["gpg", "--batch", "--no-tty", "--homedir", str(home), *args],
        )

    async def _select_key(self, home: Path) -> str:
        await run(self._gpg(home, "--import"), stdin=self.key_ring.encode("utf-8"))
        listing = await run(
            self._gpg(home, "--list-secret-keys", "--with-colons")
        )
        if not (ids := parse_secret_key_ids(listing.decode("utf-8"))):
            raise SigningException("GPG key ring does not contain a private key")
        if not self.key_id:
            _LOGGER.debug("Using first GPG key %s", ids[0])
            return ids[0]
        key_id = normalize_key_id(self.key_id)
        if key_id not in ids:
            raise SigningException(f"No GPG private key matching key id '{key_id}'")
        return key_id

    async def sign(self, payload: bytes) -> str:
        """Return an armored detached signature of the payload."""
        with tempfile.TemporaryDirectory(prefix="flux-bootstrap-gpg-") as td:
            home = Path(td)
            home.chmod(0o700)
            try:
                key_id = await self._select_key(home)
                args = ["--pinentry-mode", "loopback", "--local-user", key_id]
                if self.passphrase is not None:
                    passphrase_file = home / "passphrase"
                    passphrase_file.write_text(self.passphrase)
                    args.extend(["--passphrase-file", str(passphrase_file)])
                out = await run(
                    self._gpg(home, *args, "--armor", "--detach-sign"),
                    stdin=payload,
                )
            except CommandException as err:
                raise SigningException(f"Unable to sign commit: {err}") from err
        return out.decode("utf-8")

"""Module for generating the git credentials secret read by the source controller."""

import logging
from typing import Any
from urllib.parse import urlparse

from .config import Configuration
from .manifest import SECRET_KIND

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "source_secret",
]

USERNAME_KEY = "username"
PASSWORD_KEY = "password"
CA_KEY = "ca.crt"
IDENTITY_KEY = "identity"
KNOWN_HOSTS_KEY = "known_hosts"


def source_secret(config: Configuration) -> dict[str, Any] | None:
    """Return the Secret holding the repository credentials.

    The secret is named after `secret_name` in the Flux namespace and holds
    basic auth for http(s) urls or an identity for ssh urls. The secret is
    returned even without credentials since the GitRepository always
    references it. No secret is returned when creation is disabled.
    """
    if config.disable_secret_creation:
        _LOGGER.debug("Secret creation is disabled")
        return None
    git = config.git
    string_data: dict[str, str] = {}
    scheme = urlparse(git.url).scheme
    if scheme in ("http", "https") and git.http:
        if git.http.password:
            string_data[USERNAME_KEY] = git.http.username
            string_data[PASSWORD_KEY] = git.http.password
        if git.http.certificate_authority:
            string_data[CA_KEY] = git.http.certificate_authority
    elif scheme == "ssh" and git.ssh and git.ssh.private_key:
        string_data[IDENTITY_KEY] = git.ssh.private_key
        if git.ssh.known_hosts:
            string_data[KNOWN_HOSTS_KEY] = git.ssh.known_hosts
        if git.ssh.password:
            string_data[PASSWORD_KEY] = git.ssh.password
    if not string_data:
        _LOGGER.debug("No credentials configured for %s, secret is empty", scheme)
    return {
        "apiVersion": "v1",
        "kind": SECRET_KIND,
        "metadata": {
            "name": config.effective_secret_name,
            "namespace": config.namespace,
        },
        "type": "Opaque",
        "stringData": string_data,
    }

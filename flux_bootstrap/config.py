"""Configuration objects for flux-bootstrap.

A `Configuration` is the declarative input of the bootstrap reconciler. It is
loaded from YAML, validated, and turned into the options used to render the
install and sync manifests with `render_config`.
"""

from dataclasses import dataclass, field
import logging
import re
from urllib.parse import urlparse

import yaml
from mashumaro import DataClassDictMixin
from mashumaro.codecs.yaml import yaml_decode, yaml_encode
from mashumaro.config import BaseConfig
from mashumaro.exceptions import MissingField, InvalidFieldValue

from .exceptions import ConfigurationException

__all__ = [
    "Configuration",
    "GitConfig",
    "HttpCredentials",
    "SshCredentials",
    "Timeouts",
    "InstallOptions",
    "SyncOptions",
    "default_configuration",
    "render_config",
    "check_immutable",
    "check_kustomization_override",
    "parse_duration",
    "format_duration",
]

_LOGGER = logging.getLogger(__name__)


DEFAULT_VERSION = "v2.3.0"
DEFAULT_NAMESPACE = "flux-system"
DEFAULT_REGISTRY = "ghcr.io/fluxcd"
DEFAULT_BRANCH = "main"
DEFAULT_AUTHOR_NAME = "Flux"
DEFAULT_INTERVAL = "1m0s"
DEFAULT_CLUSTER_DOMAIN = "cluster.local"
DEFAULT_LOG_LEVEL = "info"
DEFAULT_COMPONENTS = [
    "source-controller",
    "kustomize-controller",
    "helm-controller",
    "notification-controller",
]
EXTRA_COMPONENTS = [
    "image-reflector-controller",
    "image-automation-controller",
]
REQUIRED_COMPONENTS = ["source-controller", "kustomize-controller"]
LOG_LEVELS = ["info", "debug", "error"]
URL_SCHEMES = ["http", "https", "ssh", "file"]

RFC1123_LABEL = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
RFC1123_SUBDOMAIN = re.compile(
    r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$"
)
TOLERATION_KEY = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(h|ms|m|s)")

_DURATION_UNITS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001}


def parse_duration(value: str) -> float:
    """Parse a duration in the Go format (e.g. `1m`, `1h30m`, `10m0s`) to seconds."""
    value = value.strip()
    if not value:
        raise ConfigurationException("Invalid duration: empty value")
    pos = 0
    total = 0.0
    for match in DURATION_PART.finditer(value):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(value):
        raise ConfigurationException(f"Invalid duration '{value}'")
    return total


def format_duration(seconds: float) -> str:
    """Format seconds as a Go duration string, e.g. 60 as `1m0s` and 0.5 as `500ms`.

    The value is rounded to whole milliseconds.
    """
    millis = round(seconds * 1000)
    if millis == 0:
        return "0s"
    if millis < 1000:
        return f"{millis}ms"
    whole, frac = divmod(millis, 1000)
    hours, rest = divmod(whole, 3600)
    minutes, secs = divmod(rest, 60)
    text = f"{secs}.{frac:03d}".rstrip("0") + "s" if frac else f"{secs}s"
    if hours:
        return f"{hours}h{minutes}m{text}"
    if minutes:
        return f"{minutes}m{text}"
    return text


@dataclass
class HttpCredentials(DataClassDictMixin):
    """Basic authentication for an http(s) repository."""

    username: str = "git"
    """The username presented to the git server."""

    password: str | None = None
    """The password or personal access token."""

    certificate_authority: str | None = None
    """PEM encoded CA bundle used to verify the server."""

    insecure_http_allowed: bool = False
    """Permit credentials over plain http."""

    class Config(BaseConfig):
        omit_none = True


@dataclass
class SshCredentials(DataClassDictMixin):
    """SSH key authentication for an ssh repository."""

    username: str = "git"
    """The ssh username, used when the URL does not contain one."""

    private_key: str | None = None
    """PEM encoded private key."""

    password: str | None = None
    """Passphrase of the private key."""

    known_hosts: str | None = None
    """Known hosts entries for the git server."""

    class Config(BaseConfig):
        omit_none = True


@dataclass
class GitConfig(DataClassDictMixin):
    """The repository receiving the Flux manifests."""

    url: str = ""
    """Clone URL of the repository."""

    branch: str = DEFAULT_BRANCH
    """Branch that manifests are committed to and Flux syncs from."""

    author_name: str = DEFAULT_AUTHOR_NAME
    """Commit author name."""

    author_email: str | None = None
    """Commit author email."""

    commit_message_appendix: str | None = None
    """Text appended to every commit message after a blank line."""

    gpg_key_ring: str | None = None
    """Armored private key ring used to sign commits."""

    gpg_passphrase: str | None = None
    """Passphrase protecting the signing key."""

    gpg_key_id: str | None = None
    """Selects the signing key from the key ring, the first key by default."""

    http: HttpCredentials | None = None
    """Credentials for http(s) repositories."""

    ssh: SshCredentials | None = None
    """Credentials for ssh repositories."""

    class Config(BaseConfig):
        omit_none = True


@dataclass
class Timeouts(DataClassDictMixin):
    """Time budget in seconds for each lifecycle operation."""

    create: float = 300.0
    read: float = 60.0
    update: float = 300.0
    delete: float = 300.0


@dataclass
class Configuration(DataClassDictMixin):
    """Declarative configuration of a Flux installation and its repository."""

    git: GitConfig = field(default_factory=GitConfig)
    """The repository that Flux is bootstrapped into."""

    version: str = DEFAULT_VERSION
    """Flux version to install, e.g. `v2.3.0` or `latest`."""

    namespace: str = DEFAULT_NAMESPACE
    """Namespace that Flux is installed in. Immutable."""

    path: str = ""
    """Repository path containing the cluster manifests."""

    components: list[str] = field(default_factory=lambda: list(DEFAULT_COMPONENTS))
    """Toolkit controllers to install."""

    components_extra: list[str] = field(default_factory=list)
    """Additional toolkit controllers to install."""

    registry: str = DEFAULT_REGISTRY
    """Container registry the controller images are pulled from."""

    image_pull_secret: str | None = None
    """Secret used to pull the controller images."""

    network_policy: bool = True
    """Deny ingress traffic from other namespaces."""

    watch_all_namespaces: bool = True
    """Reconcile objects in all namespaces instead of only the Flux one."""

    cluster_domain: str = DEFAULT_CLUSTER_DOMAIN
    """Internal cluster domain."""

    log_level: str = DEFAULT_LOG_LEVEL
    """Controller log level."""

    toleration_keys: list[str] = field(default_factory=list)
    """Taint keys tolerated by the controllers."""

    interval: str = DEFAULT_INTERVAL
    """Reconciliation interval of the GitRepository and Kustomization."""

    secret_name: str | None = None
    """Name of the git credentials secret, the namespace by default."""

    recurse_submodules: bool = False
    """Clone git submodules when fetching the repository."""

    kustomization_override: str | None = None
    """Replaces the generated kustomization.yaml verbatim."""

    disable_secret_creation: bool = False
    """Use an existing secret instead of creating one from the credentials."""

    delete_git_manifests: bool = True
    """Remove the manifests from the repository when Flux is uninstalled."""

    keep_namespace: bool = False
    """Keep the namespace when Flux is uninstalled."""

    timeouts: Timeouts = field(default_factory=Timeouts)
    """Time budget for each lifecycle operation."""

    class Config(BaseConfig):
        omit_none = True

    @classmethod
    def parse_yaml(cls, content: str) -> "Configuration":
        """Parse a serialized configuration."""
        try:
            return yaml_decode(content, cls)
        except (
            yaml.YAMLError,
            MissingField,
            InvalidFieldValue,
            TypeError,
            ValueError,
        ) as err:
            raise ConfigurationException(
                f"Unable to parse configuration: {err}"
            ) from err

    def yaml(self) -> str:
        """Return a YAML string representation of the configuration."""
        return yaml_encode(self, self.__class__)  # type: ignore[return-value]

    @property
    def effective_secret_name(self) -> str:
        return self.secret_name or self.namespace

    @property
    def target_path(self) -> str:
        """Repository directory holding the manifests of this installation."""
        return "/".join(part for part in (self.path.strip("/"), self.namespace) if part)

    def validate(self, credentials: bool = True) -> None:
        """Raise a ConfigurationException listing every invalid field.

        The git credentials are not checked when `credentials` is False, for
        a configuration read back from a cluster.
        """
        if errors := _validation_errors(self, credentials):
            raise ConfigurationException(
                "Invalid configuration:\n" + "\n".join(f"- {e}" for e in errors)
            )


def default_configuration() -> Configuration:
    """Return a new configuration holding the default values."""
    return Configuration()


def _validation_errors(config: Configuration, credentials: bool = True) -> list[str]:
    errors: list[str] = []
    if not RFC1123_LABEL.match(config.namespace) or len(config.namespace) > 63:
        errors.append(f"namespace '{config.namespace}' is not a valid RFC 1123 label")
    if not RFC1123_SUBDOMAIN.match(config.effective_secret_name):
        errors.append(
            f"secret_name '{config.effective_secret_name}' "
            "is not a valid RFC 1123 subdomain"
        )
    if not RFC1123_SUBDOMAIN.match(config.cluster_domain):
        errors.append(
            f"cluster_domain '{config.cluster_domain}' "
            "is not a valid RFC 1123 subdomain"
        )
    if config.version != "latest" and not config.version.startswith("v"):
        errors.append(f"version '{config.version}' must be 'latest' or start with 'v'")

    if unknown := sorted(set(config.components) - set(DEFAULT_COMPONENTS)):
        errors.append(f"unknown components: {', '.join(unknown)}")
    if len(set(config.components)) < 2:
        errors.append("at least two components are required")
    if missing := [c for c in REQUIRED_COMPONENTS if c not in config.components]:
        errors.append(f"components must include {', '.join(missing)}")
    if unknown := sorted(set(config.components_extra) - set(EXTRA_COMPONENTS)):
        errors.append(f"unknown components_extra: {', '.join(unknown)}")

    if config.log_level not in LOG_LEVELS:
        errors.append(
            f"log_level '{config.log_level}' must be one of {', '.join(LOG_LEVELS)}"
        )
    for key in config.toleration_keys:
        if not TOLERATION_KEY.match(key):
            errors.append(f"toleration key '{key}' is invalid")
    try:
        millis = parse_duration(config.interval) * 1000
        if millis < 1:
            errors.append(f"interval '{config.interval}' must be at least 1ms")
        elif abs(millis - round(millis)) > 1e-6:
            errors.append(
                f"interval '{config.interval}' must be a whole number of milliseconds"
            )
    except ConfigurationException as err:
        errors.append(f"interval: {err}")

    errors.extend(_git_errors(config.git, credentials))
    if config.kustomization_override is not None:
        try:
            check_kustomization_override(config.kustomization_override)
        except ConfigurationException as err:
            errors.append(str(err))
    return errors


def _git_errors(git: GitConfig, credentials: bool = True) -> list[str]:
    if not git.url:
        return ["git.url is required"]
    errors: list[str] = []
    parsed = urlparse(git.url)
    if parsed.scheme not in URL_SCHEMES:
        errors.append(
            f"git.url scheme '{parsed.scheme}' must be one of {', '.join(URL_SCHEMES)}"
        )
    if credentials and parsed.scheme == "ssh" and not (git.ssh and git.ssh.private_key):
        errors.append("git.ssh.private_key is required for an ssh url")
    if (
        parsed.scheme == "http"
        and git.http
        and git.http.password
        and not git.http.insecure_http_allowed
    ):
        errors.append(
            "git.http credentials over http require git.http.insecure_http_allowed"
        )
    if not git.branch:
        errors.append("git.branch must not be empty")
    if not git.author_name:
        errors.append("git.author_name must not be empty")
    return errors


def check_immutable(previous: Configuration, desired: Configuration) -> None:
    """Reject changes to fields that can only be set when the resource is created."""
    changed = []
    if previous.namespace != desired.namespace:
        changed.append("namespace")
    if previous.git.url != desired.git.url:
        changed.append("git.url")
    if changed:
        raise ConfigurationException(
            f"Changing {', '.join(changed)} requires the resource to be recreated"
        )


@dataclass(frozen=True)
class InstallOptions:
    """Options rendered into the install manifest."""

    version: str
    namespace: str
    components: tuple[str, ...]
    components_extra: tuple[str, ...]
    registry: str
    image_pull_secret: str | None
    watch_all_namespaces: bool
    network_policy: bool
    log_level: str
    cluster_domain: str
    toleration_keys: tuple[str, ...]


@dataclass(frozen=True)
class SyncOptions:
    """Options rendered into the sync manifest."""

    name: str
    namespace: str
    url: str
    branch: str
    interval: str
    secret_name: str
    target_path: str
    recurse_submodules: bool


def render_config(
    config: Configuration, validate_credentials: bool = True
) -> tuple[InstallOptions, SyncOptions]:
    """Validate the configuration and derive the manifest options."""
    config.validate(validate_credentials)
    install = InstallOptions(
        version=config.version,
        namespace=config.namespace,
        components=tuple(sorted(config.components)),
        components_extra=tuple(sorted(config.components_extra)),
        registry=config.registry,
        image_pull_secret=config.image_pull_secret,
        watch_all_namespaces=config.watch_all_namespaces,
        network_policy=config.network_policy,
        log_level=config.log_level,
        cluster_domain=config.cluster_domain,
        toleration_keys=tuple(sorted(config.toleration_keys)),
    )
    sync = SyncOptions(
        name=config.namespace,
        namespace=config.namespace,
        url=config.git.url,
        branch=config.git.branch,
        interval=format_duration(parse_duration(config.interval)),
        secret_name=config.effective_secret_name,
        target_path=config.path.strip("/"),
        recurse_submodules=config.recurse_submodules,
    )
    return install, sync



REQUIRED_KUSTOMIZATION_RESOURCES = ["gotk-components.yaml", "gotk-sync.yaml"]


def check_kustomization_override(content: str) -> None:
    """Verify a kustomization override still includes the generated manifests."""
    try:
        doc = yaml.safe_load(content)
    except yaml.YAMLError as err:
        raise ConfigurationException(
            f"kustomization_override is not valid YAML: {err}"
        ) from err
    if not isinstance(doc, dict):
        raise ConfigurationException("kustomization_override must be a YAML mapping")
    resources = doc.get("resources") or []
    if missing := [r for r in REQUIRED_KUSTOMIZATION_RESOURCES if r not in resources]:
        raise ConfigurationException(
            f"kustomization_override is missing resources: {', '.join(missing)}"
        )

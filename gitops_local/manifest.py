"""Representation of Applications and the desired state documents they manage.

An Application is parsed from an `argoproj.io` Application resource. The
documents rendered from its source are kept as plain dictionaries, since the
reconciler must handle arbitrary kinds, and are validated and normalized here
before anything is sent to a cluster.
"""

import copy
from dataclasses import dataclass, field
import logging
import re
from typing import Any, ClassVar

from mashumaro import DataClassDictMixin
from mashumaro.codecs.yaml import yaml_decode, yaml_encode
from mashumaro.config import BaseConfig

from .exceptions import ValidationError

__all__ = [
    "NamedResource",
    "Application",
    "ApplicationSource",
    "ApplicationDestination",
    "SyncPolicy",
    "SyncOptions",
    "RetryStrategy",
    "Backoff",
    "parse_duration",
    "validate_documents",
    "normalize_document",
]

_LOGGER = logging.getLogger(__name__)


# Match a prefix of apiVersion to ensure we have the right type of object.
# We don't check specific versions for forward compatibility on upgrade.
APPLICATION_DOMAIN = "argoproj.io"
APPLICATION_KIND = "Application"
NAMESPACE_KIND = "Namespace"
LIST_KIND = "List"
DEFAULT_APP_NAMESPACE = "argocd"
DEFAULT_PROJECT = "default"
DEFAULT_REVISION = "HEAD"
IN_CLUSTER_SERVER = "https://kubernetes.default.svc"
TRACKING_LABEL = "app.kubernetes.io/instance"
SYNC_WAVE_ANNOTATION = "argocd.argoproj.io/sync-wave"

DEFAULT_RETRY_LIMIT = 5
DEFAULT_BACKOFF_DURATION = 5.0
DEFAULT_BACKOFF_FACTOR = 2.0
DEFAULT_BACKOFF_MAX_DURATION = 180.0

# Kinds that are not namespaced. Anything else is assumed to be namespaced.
CLUSTER_SCOPED_KINDS = {
    NAMESPACE_KIND,
    "Node",
    "PersistentVolume",
    "StorageClass",
    "PriorityClass",
    "IngressClass",
    "RuntimeClass",
    "CustomResourceDefinition",
    "ClusterRole",
    "ClusterRoleBinding",
    "MutatingWebhookConfiguration",
    "ValidatingWebhookConfiguration",
    "APIService",
    "CSIDriver",
    "ClusterIssuer",
}

_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}
_DNS_SUBDOMAIN_RE = re.compile(
    r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$"
)
_DNS_SUBDOMAIN_MAX = 253


def parse_duration(value: str | int | float) -> float:
    """Parse a Go style duration (e.g. `5s`, `3m`, `1h30m`) into seconds.

    A bare number is interpreted as seconds.
    """
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"Invalid duration: {value!r}")
    text = value.strip()
    try:
        return float(text)
    except ValueError:
        pass
    pos = 0
    total = 0.0
    for match in _DURATION_RE.finditer(text):
        if match.start() != pos:
            raise ValidationError(f"Invalid duration: {value!r}")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text):
        raise ValidationError(f"Invalid duration: {value!r}")
    return total


def _check_version(doc: dict[str, Any], version: str) -> None:
    """Assert that the resource has the specified version."""
    if not (api_version := doc.get("apiVersion")):
        raise ValidationError(f"Invalid object missing apiVersion: {doc}")
    if not api_version.startswith(version):
        raise ValidationError(f"Invalid object expected '{version}': {doc}")


@dataclass
class BaseManifest(DataClassDictMixin):
    """Base class for all manifest objects."""

    def compact_dict(self) -> dict[str, Any]:
        """Return a compact dictionary representation of the object."""
        return self.to_dict()

    @classmethod
    def parse_yaml(cls, content: str) -> "BaseManifest":
        """Parse a serialized manifest."""
        return yaml_decode(content, cls)

    def yaml(self) -> str:
        """Return a YAML string representation of the object."""
        return yaml_encode(self, self.__class__)  # type: ignore[return-value]

    class Config(BaseConfig):
        omit_none = True


@dataclass(frozen=True, order=True)
class NamedResource(DataClassDictMixin):
    """Identifier for a kubernetes resource."""

    kind: str
    namespace: str | None
    name: str

    @classmethod
    def from_doc(cls, doc: dict[str, Any]) -> "NamedResource":
        """Return the identifier of a raw kubernetes object."""
        metadata = doc.get("metadata") or {}
        return cls(
            kind=doc["kind"],
            namespace=metadata.get("namespace"),
            name=metadata["name"],
        )

    @property
    def namespaced_name(self) -> str:
        if self.namespace:
            return f"{self.namespace}/{self.name}"
        return self.name

    def __str__(self) -> str:
        """Return the kind and namespaced name concatenated as an id."""
        return f"{self.kind}/{self.namespaced_name}"


@dataclass
class Backoff(BaseManifest):
    """Exponential backoff bounds for retries, in seconds."""

    duration: float = DEFAULT_BACKOFF_DURATION
    """Delay before the first retry."""

    factor: float = DEFAULT_BACKOFF_FACTOR
    """Multiplier applied to the delay for each further retry."""

    max_duration: float = DEFAULT_BACKOFF_MAX_DURATION
    """Upper bound for any single delay."""

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "Backoff":
        """Parse a Backoff from a syncPolicy.retry.backoff object."""
        factor = doc.get("factor", DEFAULT_BACKOFF_FACTOR)
        if not isinstance(factor, (int, float)) or factor < 1:
            raise ValidationError(f"Invalid backoff factor: {factor!r}")
        return cls(
            duration=parse_duration(doc.get("duration", DEFAULT_BACKOFF_DURATION)),
            factor=float(factor),
            max_duration=parse_duration(
                doc.get("maxDuration", DEFAULT_BACKOFF_MAX_DURATION)
            ),
        )

    def delay(self, attempt: int) -> float:
        """Return the delay after the given (1-based) failed attempt."""
        return min(
            self.duration * self.factor ** max(attempt - 1, 0), self.max_duration
        )


@dataclass
class RetryStrategy(BaseManifest):
    """Bounds for retrying a failed operation."""

    limit: int = DEFAULT_RETRY_LIMIT
    """Total number of attempts, including the first."""

    backoff: Backoff = field(default_factory=Backoff)

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "RetryStrategy":
        """Parse a RetryStrategy from a syncPolicy.retry object."""
        limit = doc.get("limit", DEFAULT_RETRY_LIMIT)
        if not isinstance(limit, int) or isinstance(limit, bool):
            raise ValidationError(f"Invalid retry limit: {limit!r}")
        return cls(
            limit=max(limit, 1),
            backoff=Backoff.parse_doc(doc.get("backoff") or {}),
        )


@dataclass
class SyncOptions(BaseManifest):
    """Options from the syncPolicy.syncOptions list of `Key=value` strings."""

    create_namespace: bool = False
    """Create the destination namespace before applying anything else."""

    validate: bool = True
    """Perform strict validation of desired state documents."""

    prune_last: bool = False
    """Prune only after applied resources have become healthy."""

    _KEYS: ClassVar[dict[str, str]] = {
        "CreateNamespace": "create_namespace",
        "Validate": "validate",
        "PruneLast": "prune_last",
    }

    @classmethod
    def parse_list(cls, options: list[str]) -> "SyncOptions":
        """Parse the list of sync options, ignoring unknown keys."""
        result = cls()
        for option in options:
            if not isinstance(option, str) or "=" not in option:
                raise ValidationError(f"Invalid sync option: {option!r}")
            key, value = option.split("=", 1)
            if (attr := cls._KEYS.get(key)) is None:
                _LOGGER.debug("Ignoring unsupported sync option %s", key)
                continue
            if value.lower() not in ("true", "false"):
                raise ValidationError(f"Invalid sync option value: {option!r}")
            setattr(result, attr, value.lower() == "true")
        return result


@dataclass
class SyncPolicy(BaseManifest):
    """Policy controlling when and how an Application is synced."""

    automated: bool = False
    """Sync automatically whenever the application is out of sync."""

    self_heal: bool = False
    """Revert drift of live state detected between polls."""

    prune: bool = False
    """Delete live resources that are no longer declared."""

    sync_options: SyncOptions = field(default_factory=SyncOptions)

    retry: RetryStrategy = field(default_factory=RetryStrategy)

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "SyncPolicy":
        """Parse a SyncPolicy from a spec.syncPolicy object."""
        automated = doc.get("automated")
        if automated is not None and not isinstance(automated, dict):
            raise ValidationError(f"Invalid syncPolicy.automated: {automated!r}")
        return cls(
            automated=automated is not None,
            self_heal=bool((automated or {}).get("selfHeal", False)),
            prune=bool((automated or {}).get("prune", False)),
            sync_options=SyncOptions.parse_list(doc.get("syncOptions") or []),
            retry=RetryStrategy.parse_doc(doc.get("retry") or {}),
        )


@dataclass
class ApplicationSource(BaseManifest):
    """A location of desired state: a path at a revision of a repository."""

    repo_url: str
    """The repository URL, or a local directory."""

    target_revision: str = DEFAULT_REVISION
    """A branch, tag, commit or HEAD."""

    path: str = "."
    """The directory within the repository holding the manifests."""

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "ApplicationSource":
        """Parse an ApplicationSource from a spec.source object."""
        if not (repo_url := doc.get("repoURL")):
            raise ValidationError(f"Invalid source missing repoURL: {doc}")
        return cls(
            repo_url=repo_url,
            target_revision=str(doc.get("targetRevision") or DEFAULT_REVISION),
            path=doc.get("path") or ".",
        )


@dataclass
class ApplicationDestination(BaseManifest):
    """The cluster and namespace where resources are deployed."""

    server: str = IN_CLUSTER_SERVER
    namespace: str | None = None

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "ApplicationDestination":
        """Parse an ApplicationDestination from a spec.destination object."""
        return cls(
            server=doc.get("server") or IN_CLUSTER_SERVER,
            namespace=doc.get("namespace"),
        )


@dataclass
class Application(BaseManifest):
    """A representation of an Application: desired state source and destination."""

    kind: ClassVar[str] = APPLICATION_KIND

    name: str
    """The name of the Application."""

    source: ApplicationSource
    """Where the desired state is read from."""

    namespace: str = DEFAULT_APP_NAMESPACE
    """The namespace that owns the Application."""

    project: str = DEFAULT_PROJECT

    destination: ApplicationDestination = field(default_factory=ApplicationDestination)

    sync_policy: SyncPolicy = field(default_factory=SyncPolicy)

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "Application":
        """Parse an Application from a kubernetes resource object."""
        _check_version(doc, APPLICATION_DOMAIN)
        if doc.get("kind") != APPLICATION_KIND:
            raise ValidationError(f"Invalid {cls.__name__} kind: {doc.get('kind')}")
        if not (metadata := doc.get("metadata")):
            raise ValidationError(f"Invalid {cls.__name__} missing metadata: {doc}")
        if not (name := metadata.get("name")):
            raise ValidationError(f"Invalid {cls.__name__} missing metadata.name: {doc}")
        if not (spec := doc.get("spec")):
            raise ValidationError(f"Invalid {cls.__name__} missing spec: {doc}")
        if not (source := spec.get("source")):
            raise ValidationError(f"Invalid {cls.__name__} missing spec.source: {doc}")
        return cls(
            name=name,
            namespace=metadata.get("namespace") or DEFAULT_APP_NAMESPACE,
            project=spec.get("project") or DEFAULT_PROJECT,
            source=ApplicationSource.parse_doc(source),
            destination=ApplicationDestination.parse_doc(spec.get("destination") or {}),
            sync_policy=SyncPolicy.parse_doc(spec.get("syncPolicy") or {}),
        )

    @property
    def resource_id(self) -> NamedResource:
        """Identifier for the Application itself."""
        return NamedResource(kind=APPLICATION_KIND, namespace=self.namespace, name=self.name)

    @property
    def namespaced_name(self) -> str:
        """Return the namespace and name concatenated as an id."""
        return f"{self.namespace}/{self.name}"


def is_application(doc: dict[str, Any]) -> bool:
    """Return true if this is an argoproj Application document."""
    return (
        doc.get("kind") == APPLICATION_KIND
        and str(doc.get("apiVersion", "")).startswith(APPLICATION_DOMAIN)
    )


def is_namespaced(kind: str) -> bool:
    """Return true if objects of this kind live in a namespace."""
    return kind not in CLUSTER_SCOPED_KINDS


def _check_string_map(doc: dict[str, Any], key: str, value: Any) -> None:
    if value is None:
        return
    if not isinstance(value, dict) or not all(
        isinstance(k, str) and isinstance(v, str) for k, v in value.items()
    ):
        raise ValidationError(f"Invalid object metadata.{key} must map strings: {doc}")


def _validate_document(doc: Any, strict: bool) -> None:
    """Check a single document, raising ValidationError when malformed."""
    if not isinstance(doc, dict):
        raise ValidationError(f"Document was not a dictionary: {type(doc).__name__}: {doc}")
    for key in ("apiVersion", "kind"):
        if not isinstance(doc.get(key), str) or not doc[key]:
            raise ValidationError(f"Invalid object missing {key}: {doc}")
    if not isinstance(metadata := doc.get("metadata"), dict):
        raise ValidationError(f"Invalid object missing metadata: {doc}")
    if not isinstance(name := metadata.get("name"), str) or not name:
        raise ValidationError(f"Invalid object missing metadata.name: {doc}")
    if (namespace := metadata.get("namespace")) is not None and not isinstance(
        namespace, str
    ):
        raise ValidationError(f"Invalid object metadata.namespace: {doc}")
    for key in ("labels", "annotations"):
        if (value := metadata.get(key)) is not None and not isinstance(value, dict):
            raise ValidationError(f"Invalid object metadata.{key} must be a mapping: {doc}")
    if not strict:
        return
    if len(name) > _DNS_SUBDOMAIN_MAX or not _DNS_SUBDOMAIN_RE.match(name):
        raise ValidationError(f"Invalid object name '{name}' is not a DNS-1123 subdomain")
    _check_string_map(doc, "labels", metadata.get("labels"))
    _check_string_map(doc, "annotations", metadata.get("annotations"))
    if (spec := doc.get("spec")) is not None and not isinstance(spec, dict):
        raise ValidationError(f"Invalid object spec must be a mapping: {doc}")
    if (wave := (metadata.get("annotations") or {}).get(SYNC_WAVE_ANNOTATION)) is not None:
        try:
            int(wave)
        except ValueError as err:
            raise ValidationError(
                f"Invalid {SYNC_WAVE_ANNOTATION} annotation '{wave}' on {name}"
            ) from err


def validate_documents(
    docs: list[Any], default_namespace: str | None, strict: bool = True
) -> list[NamedResource]:
    """Validate every document before anything is applied.

    Returns the resource identifiers in document order. Either every document
    is valid or a ValidationError is raised for the first bad one.
    """
    seen: set[NamedResource] = set()
    result = []
    for doc in docs:
        _validate_document(doc, strict)
        resource_id = resource_id_for(doc, default_namespace)
        if resource_id in seen:
            raise ValidationError(f"Duplicate resource in desired state: {resource_id}")
        seen.add(resource_id)
        result.append(resource_id)
    return result


def resource_id_for(doc: dict[str, Any], default_namespace: str | None) -> NamedResource:
    """Return the identifier a document will have once applied to the destination."""
    kind = doc["kind"]
    namespace = None
    if is_namespaced(kind):
        namespace = (doc.get("metadata") or {}).get("namespace") or default_namespace
    return NamedResource(kind=kind, namespace=namespace, name=doc["metadata"]["name"])


def normalize_document(doc: dict[str, Any], app: Application) -> dict[str, Any]:
    """Return a copy of a desired document ready to apply for the Application.

    Namespaced kinds default to the destination namespace and the tracking
    label identifying the owning Application is set.
    """
    result = copy.deepcopy(doc)
    metadata = result.setdefault("metadata", {})
    if is_namespaced(result["kind"]):
        if not metadata.get("namespace") and app.destination.namespace:
            metadata["namespace"] = app.destination.namespace
    else:
        metadata.pop("namespace", None)
    labels = metadata.get("labels") or {}
    labels[TRACKING_LABEL] = app.name
    metadata["labels"] = labels
    return result


def expand_lists(docs: list[Any]) -> list[Any]:
    """Flatten `kind: List` documents into their items."""
    result = []
    for doc in docs:
        if isinstance(doc, dict) and doc.get("kind") == LIST_KIND and isinstance(
            doc.get("items"), list
        ):
            result.extend(doc["items"])
        else:
            result.append(doc)
    return result


def sync_wave(doc: dict[str, Any]) -> int:
    """Return the sync wave annotation of a document, default 0."""
    annotations = (doc.get("metadata") or {}).get("annotations") or {}
    try:
        return int(annotations.get(SYNC_WAVE_ANNOTATION, 0))
    except (TypeError, ValueError):
        return 0

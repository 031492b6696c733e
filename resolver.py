"""
Decide whether a Pod gets the SigV4 proxy sidecar and resolve its parameters.

Two configuration sources are consulted: the Pod's annotations (set by
whoever submits the Pod) and the labels of its Namespace (set by cluster
admins). Annotations win. Nothing here does I/O.
"""
import enum
import logging
import re
from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Tuple

from kubernetes.utils import parse_quantity

from settings import DEFAULT_NAMESPACE_SELECTOR

logger = logging.getLogger(__name__)

ANNOTATION_INJECT = "sidecar.aws.signing-proxy/inject"
ANNOTATION_HOST = "sidecar.aws.signing-proxy/host"
ANNOTATION_NAME = "sidecar.aws.signing-proxy/name"
ANNOTATION_REGION = "sidecar.aws.signing-proxy/region"
ANNOTATION_ROLE_ARN = "sidecar.aws.signing-proxy/role-arn"
ANNOTATION_STATUS = "sidecar.aws.signing-proxy/status"
ANNOTATION_CPU_REQUEST = "sidecar.aws.signing-proxy/cpu-request"
ANNOTATION_MEMORY_REQUEST = "sidecar.aws.signing-proxy/memory-request"
ANNOTATION_CPU_LIMIT = "sidecar.aws.signing-proxy/cpu-limit"
ANNOTATION_MEMORY_LIMIT = "sidecar.aws.signing-proxy/memory-limit"

LABEL_HOST = "sidecar-host"
LABEL_NAME = "sidecar-name"
LABEL_REGION = "sidecar-region"
LABEL_ROLE_ARN = "sidecar-role-arn"

STATUS_INJECTED = "injected"

# annotation -> (section, resource)
RESOURCE_ANNOTATIONS = (
    (ANNOTATION_CPU_REQUEST, "requests", "cpu"),
    (ANNOTATION_MEMORY_REQUEST, "requests", "memory"),
    (ANNOTATION_CPU_LIMIT, "limits", "cpu"),
    (ANNOTATION_MEMORY_LIMIT, "limits", "memory"),
)

# Kubernetes resource.Quantity wire format
QUANTITY_PATTERN = re.compile(r"^[+-]?([0-9]+\.?[0-9]*|\.[0-9]+)([eE][+-]?[0-9]+|[KMGTPE]i|[numkMGTPE])?$")


class InjectorError(Exception):
    """Base class for failures scoped to a single admission request."""


class ParameterResolutionError(InjectorError):
    pass


class ResourceQuantityError(ParameterResolutionError):
    def __init__(self, annotation: str, value: str, reason: str):
        super().__init__(f"invalid quantity {value!r} in annotation {annotation}: {reason}")
        self.annotation = annotation
        self.value = value


class InjectSignal(enum.Enum):
    ACCEPT = "accept"
    REJECT = "reject"
    UNSET = "unset"


_ACCEPT_VALUES = {"y", "yes", "true", "on"}
_REJECT_VALUES = {"n", "no", "false", "off"}


def parse_inject_signal(value: Optional[str]) -> InjectSignal:
    normalized = (value or "").strip().lower()
    if normalized in _ACCEPT_VALUES:
        return InjectSignal.ACCEPT
    if normalized in _REJECT_VALUES:
        return InjectSignal.REJECT
    return InjectSignal.UNSET


@dataclass(frozen=True)
class ResolvedParameters:
    host: str
    name: str
    region: str
    role_arn: str = ""
    resources: Optional[Dict[str, Dict[str, str]]] = None


def _blank(value: Optional[str]) -> bool:
    return not value or not value.strip()


def selector_matches(selector: Mapping[str, str], labels: Mapping[str, str]) -> bool:
    """matchLabels semantics. An empty selector matches nothing."""
    if not selector:
        return False
    return all(labels.get(key) == value for key, value in selector.items())


def should_mutate(
    namespace_labels: Optional[Mapping[str, str]],
    annotations: Optional[Mapping[str, str]],
    selector: Mapping[str, str] = DEFAULT_NAMESPACE_SELECTOR,
) -> bool:
    labels = namespace_labels or {}
    annotations = annotations or {}

    if annotations.get(ANNOTATION_STATUS) == STATUS_INJECTED:
        logger.debug("Pod already carries %s=%s; skipping", ANNOTATION_STATUS, STATUS_INJECTED)
        return False

    if _blank(annotations.get(ANNOTATION_HOST)) and _blank(labels.get(LABEL_HOST)):
        logger.debug("Neither annotation %s nor label %s is set; skipping", ANNOTATION_HOST, LABEL_HOST)
        return False

    signal = parse_inject_signal(annotations.get(ANNOTATION_INJECT))
    namespace_grants = selector_matches(selector, labels)
    logger.debug("Inject signal=%s namespace_grants=%s", signal.value, namespace_grants)

    return (namespace_grants and signal is not InjectSignal.REJECT) or signal is InjectSignal.ACCEPT


def extract_parameters(host: str, name: Optional[str], region: Optional[str]) -> Tuple[str, str, str]:
    """
    Fill in a blank name/region from the host.

    For "es.us-east-1.amazonaws.com" the name is "es" and the region is
    "us-east-1". A host without any "." cannot yield either and raises
    ParameterResolutionError, as does one whose derived name or region
    would be empty (".amazonaws.com", "es.", "es..com"). With a single "."
    the region is everything after it.
    """
    needs_derivation = _blank(name) or _blank(region)
    if needs_derivation and "." not in host:
        raise ParameterResolutionError(
            f"cannot derive sidecar name/region from host {host!r}: expected a dotted hostname"
        )

    if _blank(name):
        name = host.split(".", 1)[0]
    if _blank(region):
        region = host.split(".", 1)[1].split(".", 1)[0]

    if _blank(name) or _blank(region):
        raise ParameterResolutionError(
            f"cannot derive sidecar name/region from host {host!r}: empty hostname label"
        )

    return host, name, region


def get_upstream_endpoint_parameters(
    namespace_labels: Optional[Mapping[str, str]],
    annotations: Optional[Mapping[str, str]],
) -> Tuple[str, str, str]:
    labels = namespace_labels or {}
    annotations = annotations or {}

    host = annotations.get(ANNOTATION_HOST, "")
    if not _blank(host):
        return extract_parameters(host, annotations.get(ANNOTATION_NAME), annotations.get(ANNOTATION_REGION))

    host = labels.get(LABEL_HOST, "")
    if _blank(host):
        raise ParameterResolutionError(f"no upstream host: set annotation {ANNOTATION_HOST} or label {LABEL_HOST}")
    return extract_parameters(host, labels.get(LABEL_NAME), labels.get(LABEL_REGION))


def get_role_arn(
    namespace_labels: Optional[Mapping[str, str]],
    annotations: Optional[Mapping[str, str]],
) -> str:
    role_arn = (annotations or {}).get(ANNOTATION_ROLE_ARN, "")
    if _blank(role_arn):
        role_arn = (namespace_labels or {}).get(LABEL_ROLE_ARN, "")
    return "" if _blank(role_arn) else role_arn


def get_resource_requirements(annotations: Optional[Mapping[str, str]]) -> Optional[Dict[str, Dict[str, str]]]:
    """
    Build the sidecar's resources block from the four resource annotations.

    Returns None when none of them is set. Only the sections that received
    a value are present in the result; quantities are kept as written.
    """
    annotations = annotations or {}
    requirements: Dict[str, Dict[str, str]] = {}

    for annotation, section, resource in RESOURCE_ANNOTATIONS:
        value = annotations.get(annotation)
        if _blank(value):
            continue
        value = value.strip()
        # parse_quantity goes through Decimal, which also takes NaN, Infinity and 1_000
        if not QUANTITY_PATTERN.match(value):
            raise ResourceQuantityError(annotation, value, "not a Kubernetes quantity")
        try:
            quantity = parse_quantity(value)
        except ValueError as e:
            raise ResourceQuantityError(annotation, value, str(e)) from e
        if quantity < 0:
            raise ResourceQuantityError(annotation, value, "must not be negative")
        requirements.setdefault(section, {})[resource] = value

    return requirements or None


def resolve_parameters(
    namespace_labels: Optional[Mapping[str, str]],
    annotations: Optional[Mapping[str, str]],
) -> ResolvedParameters:
    host, name, region = get_upstream_endpoint_parameters(namespace_labels, annotations)
    return ResolvedParameters(
        host=host,
        name=name,
        region=region,
        role_arn=get_role_arn(namespace_labels, annotations),
        resources=get_resource_requirements(annotations),
    )

import json
import logging
from typing import Any, Dict, List, Mapping, Optional

from resolver import ANNOTATION_STATUS, STATUS_INJECTED, ResolvedParameters

logger = logging.getLogger(__name__)

SIDECAR_NAME = "sidecar-aws-sigv4-proxy"
SIDECAR_PORT = 8005
CONTAINERS_PATH = "/spec/containers"
ANNOTATIONS_PATH = "/metadata/annotations"


def escape_json_pointer(token: str) -> str:
    return token.replace("~", "~0").replace("/", "~1")


def add_containers(target: Optional[List[Dict[str, Any]]], containers: List[Dict[str, Any]], base_path: str) -> List[Dict[str, Any]]:
    patch: List[Dict[str, Any]] = []
    first = not target

    for container in containers:
        if first:
            # The array has to exist before anything can be appended with "/-"
            first = False
            logger.debug("Creating %s with container '%s'", base_path, container.get("name"))
            patch.append({
                "op": "add",
                "path": base_path,
                "value": [container],
            })
        else:
            logger.debug("Appending container '%s' to %s", container.get("name"), base_path)
            patch.append({
                "op": "add",
                "path": f"{base_path}/-",
                "value": container,
            })

    return patch


def update_annotations(target: Optional[Mapping[str, str]], annotations: Mapping[str, str]) -> List[Dict[str, Any]]:
    patch: List[Dict[str, Any]] = []

    if target is None:
        logger.debug("Pod has no annotations; creating %s", ANNOTATIONS_PATH)
        return [{
            "op": "add",
            "path": ANNOTATIONS_PATH,
            "value": dict(annotations),
        }]

    for key, value in annotations.items():
        op = "add" if not (target.get(key) or "").strip() else "replace"
        patch.append({
            "op": op,
            "path": f"{ANNOTATIONS_PATH}/{escape_json_pointer(key)}",
            "value": value,
        })

    return patch


def build_sidecar_args(params: ResolvedParameters) -> List[str]:
    args = ["--name", params.name, "--region", params.region, "--host", params.host, "--port", f":{SIDECAR_PORT}"]
    if params.role_arn:
        args.extend(["--role-arn", params.role_arn])
    return args


def build_sidecar_container(params: ResolvedParameters, image: str) -> Dict[str, Any]:
    container: Dict[str, Any] = {
        "name": SIDECAR_NAME,
        "image": image,
        "imagePullPolicy": "IfNotPresent",
        "ports": [{"containerPort": SIDECAR_PORT}],
        "args": build_sidecar_args(params),
    }
    if params.resources:
        container["resources"] = params.resources
    return container


def build_patch(pod: Dict[str, Any], params: ResolvedParameters, image: str) -> List[Dict[str, Any]]:
    """
    Patch that adds the proxy sidecar to ``pod`` and marks it as injected.

    The status annotation is what stops a second pass of the webhook from
    adding the sidecar again.
    """
    spec = pod.get("spec") or {}
    metadata = pod.get("metadata") or {}

    patch = add_containers(spec.get("containers"), [build_sidecar_container(params, image)], CONTAINERS_PATH)
    patch.extend(update_annotations(metadata.get("annotations"), {ANNOTATION_STATUS: STATUS_INJECTED}))

    logger.debug("Sidecar patch prepared: %s", json.dumps(patch))
    return patch

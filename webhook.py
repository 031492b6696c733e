#!/usr/bin/env python3
import argparse
import base64
import json
import os
import logging
from typing import Any, Dict, Optional

from flask import Flask, jsonify, request

from namespaces import KubernetesNamespaceLookup, NamespaceLookup
from patches import build_patch
from resolver import InjectorError, resolve_parameters, should_mutate
from settings import InjectorConfig

logger = logging.getLogger("sigv4-injector")


def build_review_response(review: Dict[str, Any], allowed: bool, patch=None, message: Optional[str] = None) -> Dict[str, Any]:
    req = review.get("request") or {}
    response_body: Dict[str, Any] = {
        "apiVersion": review.get("apiVersion") or "admission.k8s.io/v1",
        "kind": "AdmissionReview",
        "response": {
            "uid": req.get("uid"),
            "allowed": allowed,
        },
    }
    if message:
        response_body["response"]["status"] = {"message": message}
    if patch:
        patch_str = json.dumps(patch)
        response_body["response"]["patchType"] = "JSONPatch"
        response_body["response"]["patch"] = base64.b64encode(patch_str.encode("utf-8")).decode("utf-8")
    return response_body


def create_app(namespace_lookup: NamespaceLookup, config: Optional[InjectorConfig] = None) -> Flask:
    config = config or InjectorConfig()
    app = Flask(__name__)

    @app.route("/healthz", methods=["GET"])
    def healthz():
        return "ok", 200

    @app.route("/mutate", methods=["POST"])
    def mutate():
        if request.mimetype != "application/json":
            logger.warning("Invalid Content-Type %s, expected application/json", request.content_type)
            return "Invalid Content-Type, expected application/json", 415

        if not request.get_data():
            logger.warning("Empty request body")
            return "Empty request body", 400

        review = request.get_json(silent=True)
        if not isinstance(review, dict):
            logger.warning("Request body is not a JSON AdmissionReview")
            return "Invalid AdmissionReview", 400

        req = review.get("request") or {}
        uid = req.get("uid")

        logger.debug("AdmissionReview received: uid=%s kind=%s.%s op=%s",
                     uid,
                     (req.get("kind") or {}).get("group", ""),
                     (req.get("kind") or {}).get("kind", ""),
                     req.get("operation", ""))

        if (req.get("kind") or {}).get("kind") != "Pod":
            logger.debug("Skipping non-Pod kind")
            return jsonify(build_review_response(review, allowed=True))

        pod = req.get("object")
        if not isinstance(pod, dict):
            logger.warning("AdmissionRequest %s carries no Pod object", uid)
            return jsonify(build_review_response(review, allowed=False, message="AdmissionRequest object is not a Pod"))

        metadata = pod.get("metadata") or {}
        annotations = metadata.get("annotations")
        namespace = req.get("namespace") or metadata.get("namespace") or ""

        try:
            ns_labels = namespace_lookup.labels(namespace)

            if not should_mutate(ns_labels, annotations, config.namespace_selector):
                logger.debug("Pod %s/%s does not need the sidecar; allowing without patch",
                             namespace, metadata.get("name") or metadata.get("generateName", ""))
                return jsonify(build_review_response(review, allowed=True))

            params = resolve_parameters(ns_labels, annotations)
        except InjectorError as e:
            logger.warning("Denying AdmissionRequest %s: %s", uid, e)
            return jsonify(build_review_response(review, allowed=False, message=str(e)))

        patch_ops = build_patch(pod, params, config.proxy_image)
        logger.info("Injecting sidecar into pod %s/%s (host=%s region=%s)",
                    namespace, metadata.get("name") or metadata.get("generateName", ""),
                    params.host, params.region)
        return jsonify(build_review_response(review, allowed=True, patch=patch_ops))

    return app


def parse_args(config: InjectorConfig, argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Mutating webhook that injects the AWS SigV4 signing proxy sidecar.")
    parser.add_argument("--port", type=int, default=config.port, help="Webhook server port.")
    parser.add_argument("--tls-cert-file", default=config.tls_cert_file, help="File containing the x509 certificate for HTTPS.")
    parser.add_argument("--tls-key-file", default=config.tls_key_file, help="File containing the x509 private key matching --tls-cert-file.")
    return parser.parse_args(argv)


def main(argv=None) -> None:
    config = InjectorConfig.from_env()
    args = parse_args(config, argv)

    logging.basicConfig(level=getattr(logging, config.log_level, logging.INFO), format="%(asctime)s %(levelname)s %(message)s")

    # Basic validation on startup
    if not os.path.exists(args.tls_cert_file) or not os.path.exists(args.tls_key_file):
        raise SystemExit(f"TLS cert/key not found at {args.tls_cert_file} / {args.tls_key_file}")

    app = create_app(KubernetesNamespaceLookup.from_cluster(timeout=config.lookup_timeout), config)

    logger.info("Starting sigv4-injector webhook on port %d", args.port)
    logger.info("Effective config: PROXY_IMAGE=%s NAMESPACE_SELECTOR=%s LOG_LEVEL=%s",
                config.proxy_image, dict(config.namespace_selector), config.log_level)
    logger.info("TLS cert=%s key=%s", args.tls_cert_file, args.tls_key_file)

    app.run(
        host="0.0.0.0",
        port=args.port,
        ssl_context=(args.tls_cert_file, args.tls_key_file),
        debug=False,
        threaded=True,
    )


if __name__ == "__main__":
    main()

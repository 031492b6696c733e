import os
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, Optional

DEFAULT_PROXY_IMAGE = "public.ecr.aws/aws-observability/aws-sigv4-proxy:latest"
DEFAULT_NAMESPACE_SELECTOR: Mapping[str, str] = MappingProxyType({"sidecar-inject": "true"})


@dataclass(frozen=True)
class InjectorConfig:
    proxy_image: str = DEFAULT_PROXY_IMAGE
    namespace_selector: Mapping[str, str] = field(default_factory=lambda: DEFAULT_NAMESPACE_SELECTOR)
    port: int = 443
    tls_cert_file: str = "/etc/webhook/certs/cert.pem"
    tls_key_file: str = "/etc/webhook/certs/key.pem"
    log_level: str = "INFO"
    lookup_timeout: float = 5.0

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "InjectorConfig":
        env = os.environ if environ is None else environ
        # The deployment manifests historically set the hyphenated name
        image = env.get("AWS-SIGV4-PROXY-IMAGE") or env.get("AWS_SIGV4_PROXY_IMAGE") or DEFAULT_PROXY_IMAGE
        return cls(
            proxy_image=image,
            port=int(env.get("WEBHOOK_PORT", "443")),
            tls_cert_file=env.get("TLS_CERT_FILE", "/etc/webhook/certs/cert.pem"),
            tls_key_file=env.get("TLS_KEY_FILE", "/etc/webhook/certs/key.pem"),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
            lookup_timeout=float(env.get("NAMESPACE_LOOKUP_TIMEOUT", "5")),
        )

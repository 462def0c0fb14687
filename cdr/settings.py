from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_list(name: str, default: str) -> tuple[str, ...]:
    raw = os.getenv(name, default)
    return tuple(x.strip() for x in raw.split(",") if x.strip())


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("CDR_DB_PATH", "cdr.db")
    namespace: str = os.getenv("CDR_NAMESPACE", "default")
    scope: str = os.getenv("CDR_SCOPE", "base")
    unit_set: str | None = os.getenv("CDR_SET")
    # Kubernetes label selector applied to live resources.
    label_selector: str = os.getenv("CDR_LABEL_SELECTOR", "")
    # Comma separated key=value pairs units must carry, e.g. "monitor=true,tier=critical"
    unit_labels: str = os.getenv("CDR_UNIT_LABELS", "")
    kinds: tuple[str, ...] = _env_list("CDR_KINDS", "Deployment,Service,ConfigMap")

    # Reconciliation
    auto_correct: bool = _env_bool("CDR_AUTO_CORRECT", False)
    fallback_interval_s: int = _env_int("CDR_FALLBACK_INTERVAL_S", 300)
    debounce_s: float = _env_float("CDR_DEBOUNCE_S", 2.0)
    workers: int = _env_int("CDR_WORKERS", 4)
    start_loop: bool = _env_bool("CDR_START_LOOP", True)
    queue_size: int = _env_int("CDR_QUEUE_SIZE", 1024)
    retry_attempts: int = _env_int("CDR_RETRY_ATTEMPTS", 3)

    # Registry
    registry: str = os.getenv("CDR_REGISTRY", "local")  # local|http
    registry_url: str = os.getenv("CDR_REGISTRY_URL", "https://api.confighub.com/v1")
    registry_token: str | None = os.getenv("CDR_REGISTRY_TOKEN")
    registry_timeout_s: float = _env_float("CDR_REGISTRY_TIMEOUT_S", 30.0)

    # Cluster
    cluster: str = os.getenv("CDR_CLUSTER", "kube")  # kube|docker
    kube_api: str = os.getenv("CDR_KUBE_API", "https://kubernetes.default.svc")
    kube_token: str | None = os.getenv("CDR_KUBE_TOKEN")
    kube_verify: bool = _env_bool("CDR_KUBE_VERIFY", True)
    cluster_timeout_s: float = _env_float("CDR_CLUSTER_TIMEOUT_S", 30.0)

    # Advisory collaborator (optional)
    claude_api_key: str | None = os.getenv("CLAUDE_API_KEY")
    advisor_url: str = os.getenv("CDR_ADVISOR_URL", "https://api.anthropic.com/v1/messages")
    advisor_model: str = os.getenv("CDR_ADVISOR_MODEL", "claude-3-5-sonnet-latest")
    advisor_timeout_s: float = _env_float("CDR_ADVISOR_TIMEOUT_S", 60.0)

    # Email alerting (optional)
    enable_email: bool = _env_bool("CDR_ENABLE_EMAIL", False)
    smtp_host: str = os.getenv("CDR_SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = _env_int("CDR_SMTP_PORT", 587)
    smtp_user: str | None = os.getenv("CDR_SMTP_USER")
    smtp_password: str | None = os.getenv("CDR_SMTP_PASSWORD")
    email_from: str | None = os.getenv("CDR_EMAIL_FROM")
    email_to: str | None = os.getenv("CDR_EMAIL_TO")


def parse_label_selector(raw: str) -> dict[str, str]:
    """Parse "k=v,k2=v2" into a dict. Entries without '=' are ignored."""
    out: dict[str, str] = {}
    for part in raw.split(","):
        if "=" not in part:
            continue
        k, v = part.split("=", 1)
        if k.strip():
            out[k.strip()] = v.strip()
    return out


settings = Settings()

"""
Configuration module — all settings from env vars with sensible defaults.
Follows 12-factor app methodology.
"""
import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    # Kubernetes
    KUBECONFIG: str = os.environ.get("KUBECONFIG", "")
    IN_CLUSTER: bool = os.environ.get("IN_CLUSTER", "false").lower() == "true"

    # CRD
    CRD_GROUP: str = os.environ.get("CRD_GROUP", "postgres.pgcluster.io")
    CRD_VERSION: str = os.environ.get("CRD_VERSION", "v1beta1")
    CRD_PLURAL: str = "postgresclusters"
    CRD_KIND: str = "PostgresCluster"

    # Label taxonomy (reserved keys live under this prefix)
    LABEL_PREFIX: str = os.environ.get("LABEL_PREFIX", "") or os.environ.get(
        "CRD_GROUP", "postgres.pgcluster.io"
    )

    # Images
    POSTGRES_IMAGE: str = os.environ.get("POSTGRES_IMAGE", "postgres:16")
    PGBACKREST_IMAGE: str = os.environ.get("PGBACKREST_IMAGE", "pgbackrest/pgbackrest:2.50")
    PGBOUNCER_IMAGE: str = os.environ.get("PGBOUNCER_IMAGE", "bitnami/pgbouncer:1.22")
    DEFAULT_PORT: int = int(os.environ.get("DEFAULT_PORT", "5432"))

    # Apply engine
    APPLY_FANOUT: int = int(os.environ.get("APPLY_FANOUT", "4"))
    REQUEST_TIMEOUT: int = int(os.environ.get("REQUEST_TIMEOUT", "30"))
    PASS_DEADLINE: int = int(os.environ.get("PASS_DEADLINE", "60"))

    # Requeue policy
    PROGRESSING_REQUEUE_SECONDS: float = float(os.environ.get("PROGRESSING_REQUEUE_SECONDS", "15"))
    TRANSIENT_REQUEUE_SECONDS: float = float(os.environ.get("TRANSIENT_REQUEUE_SECONDS", "0"))
    MAX_TRANSIENT_RETRIES: int = int(os.environ.get("MAX_TRANSIENT_RETRIES", "5"))

    # Operator
    MAX_PARALLEL_RECONCILES: int = int(os.environ.get("MAX_PARALLEL_RECONCILES", "3"))
    HEALTH_CHECK_INTERVAL: float = float(os.environ.get("HEALTH_CHECK_INTERVAL", "120"))
    REDIS_URL: str = os.environ.get("REDIS_URL", "")

    # API
    API_HOST: str = os.environ.get("API_HOST", "0.0.0.0")
    API_PORT: int = int(os.environ.get("API_PORT", "8080"))
    CORS_ORIGINS: str = os.environ.get("CORS_ORIGINS", "*")
    RATE_LIMIT: str = os.environ.get("RATE_LIMIT", "30/minute")

    @property
    def api_version(self) -> str:
        return f"{self.CRD_GROUP}/{self.CRD_VERSION}"


settings = Settings()

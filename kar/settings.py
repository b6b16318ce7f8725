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


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("KAR_DB_PATH", "kar.db")
    # "*" watches every namespace.
    namespace: str = os.getenv("KAR_NAMESPACE", "*")
    reconcile_interval_s: int = _env_int("KAR_RECONCILE_INTERVAL_S", 120)
    enable_loop: bool = _env_bool("KAR_ENABLE_LOOP", True)

    # Worker pools
    operation_workers: int = _env_int("KAR_OPERATION_WORKERS", 8)
    assembly_workers: int = _env_int("KAR_ASSEMBLY_WORKERS", 4)

    # Default images, overridable per assembly
    kafka_image: str = os.getenv("KAR_KAFKA_IMAGE", "strimzi/kafka:latest")
    zookeeper_image: str = os.getenv("KAR_ZOOKEEPER_IMAGE", "strimzi/zookeeper:latest")
    topic_controller_image: str = os.getenv("KAR_TOPIC_CONTROLLER_IMAGE", "strimzi/topic-controller:latest")

    # API basic auth
    api_user: str = os.getenv("KAR_API_USER", "admin")
    api_password: str = os.getenv("KAR_API_PASSWORD", "changeme")


settings = Settings()

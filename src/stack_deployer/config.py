"""Configuration loading utilities for stack-deployer."""

from __future__ import annotations

import json
import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from .paths import DEFAULT_CONFIG_PATH

# Load .env file if it exists
load_dotenv()

DEFAULT_REGION = "us-west-2"

TRAIN_MODELS_SCRIPT = """
from models.recommendation_engine import GhibliFoodRecommendationEngine
from utils.data_fetcher import DataFetcher
import asyncio

async def train():
    engine = GhibliFoodRecommendationEngine()
    books, ratings = await DataFetcher().get_training_data()
    engine.train_content_based_model(books)
    engine.train_collaborative_filtering_model(ratings)
    engine.save_models()
    print("Models trained successfully")

asyncio.run(train())
"""


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("true", "1", "yes", "on")


@dataclass(frozen=True)
class Environment:
    """A named deployment target. Immutable for one orchestration run."""

    name: str
    namespace: str
    region: str
    variables: Dict[str, str] = field(default_factory=dict)


@dataclass
class OneShotCommand:
    """A command executed inside a running instance of ``service``."""

    service: str
    command: List[str]
    description: str = ""


@dataclass
class ProvisioningConfig:
    """Settings for the Terraform-driven provisioning lifecycle."""

    terraform_dir: str = "terraform"
    region: str = DEFAULT_REGION
    state_bucket: str = "ghibli-food-terraform-state"
    state_key: str = "{environment}/terraform.tfstate"
    lock_table: str = "ghibli-food-terraform-locks"
    lock_stale_after: int = 3600          # 锁超过该秒数视为陈旧
    domain_name: str = "ghibli-food.example.com"
    required_tools: List[str] = field(default_factory=lambda: ["terraform", "aws", "kubectl"])
    required_outputs: List[str] = field(
        default_factory=lambda: ["eks_cluster_id", "vpc_id", "rds_instance_endpoint", "region"]
    )
    sensitive_outputs: List[str] = field(
        default_factory=lambda: ["rds_instance_endpoint", "db_password", "database_url"]
    )
    install_cluster_components: bool = True
    load_balancer_role_output: str = "aws_load_balancer_controller_role_arn"
    metrics_server_manifest: str = (
        "https://github.com/kubernetes-sigs/metrics-server/releases/latest/download/components.yaml"
    )
    command_timeout: int = 3600


@dataclass
class DeploymentConfig:
    """Settings for the workload rollout lifecycle."""

    manifest_dir: str = "kubernetes"
    monitoring_dir: str = "monitoring"
    namespace: str = "ghibli-food"
    namespace_manifest: str = "namespace.yaml"
    ingress_manifest: str = "ingress.yaml"
    ingress_name: str = "ghibli-food-ingress"
    data_store: Dict[str, Any] = field(
        default_factory=lambda: {
            "name": "postgres",
            "manifest": "postgres.yaml",
            "kind": "StatefulSet",
            "selector": "app=postgres",
            "replicas": 1,
            "image": "postgres:15-alpine",
        }
    )
    services: List[Dict[str, Any]] = field(
        default_factory=lambda: [
            {
                "name": "backend",
                "manifest": "backend.yaml",
                "selector": "app=backend",
                "replicas": 2,
                "env": ["DATABASE_HOST"],
                "readiness": {"path": "/", "port": 5000},
                "liveness": {"path": "/", "port": 5000},
                "health_check": True,
            },
            {
                "name": "frontend",
                "manifest": "frontend.yaml",
                "selector": "app=frontend",
                "replicas": 2,
                "readiness": {"path": "/", "port": 80},
                "liveness": {"path": "/", "port": 80},
                "health_check": False,
            },
            {
                "name": "ml-service",
                "manifest": "ml-service.yaml",
                "selector": "app=ml-service",
                "replicas": 1,
                "env": ["DATABASE_HOST"],
                "readiness": {"path": "/health", "port": 8001},
                "liveness": {"path": "/health", "port": 8001},
                "health_check": True,
            },
        ]
    )
    required_tools: List[str] = field(default_factory=lambda: ["kubectl"])
    readiness_timeout: int = 300
    rollout_timeout: int = 300
    poll_interval: int = 5
    health_timeout: int = 30
    health_interval: int = 5
    monitoring_enabled: bool = True
    monitoring_configmaps: Dict[str, str] = field(
        default_factory=lambda: {
            "prometheus-config": "prometheus.yml",
            "alert-rules": "alert_rules.yml",
        }
    )
    migration: Optional[OneShotCommand] = field(
        default_factory=lambda: OneShotCommand(
            service="backend", command=["npm", "run", "migrate"], description="database migrations"
        )
    )
    model_refresh: Optional[OneShotCommand] = field(
        default_factory=lambda: OneShotCommand(
            service="ml-service",
            command=["python", "-c", TRAIN_MODELS_SCRIPT],
            description="recommendation model training",
        )
    )
    cleanup_retention_hours: int = 24
    consume_infra_outputs: bool = True
    output_bindings: Dict[str, str] = field(
        default_factory=lambda: {
            "DATABASE_HOST": "rds_instance_endpoint",
            "CLUSTER_NAME": "eks_cluster_id",
            "AWS_REGION": "region",
        }
    )
    infra_configmap_name: str = "infrastructure-outputs"
    infra_secret_name: str = "infrastructure-secrets"
    probe_external_address: bool = True


@dataclass
class ImagesConfig:
    """Settings for container image builds."""

    registry: str = "ghcr.io"
    namespace: str = "yourusername/ghibli-food"
    tag: str = "latest"
    push: bool = False
    cleanup_cache: bool = False
    build_args: List[str] = field(default_factory=list)
    source_root: str = ".."
    dockerfile_dir: str = "docker"
    compose_project: str = "ghibli-food-devops"
    scan_severity: str = "HIGH,CRITICAL"
    services: List[Dict[str, Any]] = field(
        default_factory=lambda: [
            {"name": "backend", "context": "Back-End-Web/Ghibli-Food-Receipt-API"},
            {
                "name": "frontend",
                "context": "Front-End-Web/Ghibli-Food-Receipt",
                "dockerfile": "Dockerfile.frontend",
                "build_args": {
                    "VITE_API_URL": "https://api.ghibli-food.example.com",
                    "VITE_ML_API_URL": "https://ml.ghibli-food.example.com",
                },
            },
            {"name": "ml-service", "context": "Machine-Learnimg-Web/Ghibli-Food-ML"},
        ]
    )


@dataclass
class AppConfig:
    """Top-level configuration."""

    provisioning: ProvisioningConfig = field(default_factory=ProvisioningConfig)
    deployment: DeploymentConfig = field(default_factory=DeploymentConfig)
    images: ImagesConfig = field(default_factory=ImagesConfig)
    environments: Dict[str, Dict[str, Any]] = field(
        default_factory=lambda: {
            "production": {"namespace": "ghibli-food"},
            "staging": {"namespace": "ghibli-food-staging"},
        }
    )

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "AppConfig":
        provisioning_payload = _strip_comments(payload.get("provisioning", {}) or {})
        deployment_payload = _strip_comments(payload.get("deployment", {}) or {})
        images_payload = _strip_comments(payload.get("images", {}) or {})

        # 一次性命令单独解析，null 表示禁用
        one_shots = {}
        for key in ("migration", "model_refresh"):
            if key in deployment_payload:
                raw = deployment_payload.pop(key)
                one_shots[key] = OneShotCommand(**raw) if raw else None

        deployment = DeploymentConfig(**{**DeploymentConfig().__dict__, **deployment_payload})
        for key, value in one_shots.items():
            setattr(deployment, key, value)

        environments = payload.get("environments")
        return cls(
            provisioning=ProvisioningConfig(
                **{**ProvisioningConfig().__dict__, **provisioning_payload}
            ),
            deployment=deployment,
            images=ImagesConfig(**{**ImagesConfig().__dict__, **images_payload}),
            environments=environments if environments is not None else cls().environments,
        )

    def environment(self, name: str) -> Environment:
        """Resolve the immutable Environment for ``name``.

        Undeclared names fall back to the deployment namespace and provisioning region.
        """
        declared = self.environments.get(name, {}) or {}
        return Environment(
            name=name,
            namespace=declared.get("namespace") or self.deployment.namespace,
            region=declared.get("region") or self.provisioning.region,
            variables=dict(declared.get("variables", {}) or {}),
        )

    def is_declared(self, name: str) -> bool:
        return name in self.environments


def _strip_comments(payload: Dict[str, Any]) -> Dict[str, Any]:
    # 过滤掉以下划线开头的注释字段
    return {k: v for k, v in payload.items() if not k.startswith("_")}


def load_config(path: Optional[str] = None) -> AppConfig:
    """Load configuration from `path` or the default location.

    An explicit ``path`` must exist. Without one, ``config/default_config.json`` is
    used when present, else the built-in defaults.

    Environment variables (higher priority than config file):
    - AWS_REGION: region for the state backend and cluster
    - DEPLOY_MONITORING: load monitoring configuration (default: true)
    - REGISTRY / IMAGE_NAMESPACE: image registry coordinates
    - TAG: image tag
    - PUSH: push images after build (default: false)
    - CLEANUP_CACHE: prune the docker builder cache (default: false)
    - BUILD_ARGS: extra arguments passed to docker build
    - STACK_DEPLOYER_TERRAFORM_DIR / STACK_DEPLOYER_MANIFEST_DIR: directory overrides
    """
    if path:
        candidate = Path(path)
        if not candidate.is_file():
            raise FileNotFoundError(f"Could not find configuration file: {path}")
    else:
        candidate = DEFAULT_CONFIG_PATH

    if candidate.is_file():
        with candidate.open("r", encoding="utf-8") as handle:
            config = AppConfig.from_dict(json.load(handle))
    else:
        config = AppConfig()

    apply_environment_overrides(config)
    return config


def apply_environment_overrides(config: AppConfig) -> None:
    env_region = os.getenv("AWS_REGION")
    if env_region:
        config.provisioning.region = env_region

    config.deployment.monitoring_enabled = _env_flag(
        "DEPLOY_MONITORING", config.deployment.monitoring_enabled
    )

    env_registry = os.getenv("REGISTRY")
    if env_registry:
        config.images.registry = env_registry

    env_image_namespace = os.getenv("IMAGE_NAMESPACE")
    if env_image_namespace:
        config.images.namespace = env_image_namespace

    env_tag = os.getenv("TAG")
    if env_tag:
        config.images.tag = env_tag

    config.images.push = _env_flag("PUSH", config.images.push)
    config.images.cleanup_cache = _env_flag("CLEANUP_CACHE", config.images.cleanup_cache)

    env_build_args = os.getenv("BUILD_ARGS")
    if env_build_args:
        config.images.build_args = shlex.split(env_build_args)

    env_terraform_dir = os.getenv("STACK_DEPLOYER_TERRAFORM_DIR")
    if env_terraform_dir:
        config.provisioning.terraform_dir = env_terraform_dir

    env_manifest_dir = os.getenv("STACK_DEPLOYER_MANIFEST_DIR")
    if env_manifest_dir:
        config.deployment.manifest_dir = env_manifest_dir

"""Container image builds for the application services."""

from __future__ import annotations

import getpass
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from ..config import ImagesConfig
from ..errors import ImageBuildError, PrerequisiteError
from ..local import LocalSession, ToolProbe
from ..utils.logging import get_logger, log_success

logger = get_logger(__name__)

# 镜像构建可能很慢
BUILD_TIMEOUT = 3600


@dataclass
class ImageSpec:
    """One service image: build context, optional Dockerfile override, build args."""

    name: str
    context: str
    dockerfile: Optional[str] = None
    build_args: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict) -> "ImageSpec":
        return cls(
            name=data["name"],
            context=data["context"],
            dockerfile=data.get("dockerfile"),
            build_args=dict(data.get("build_args", {}) or {}),
        )


class ImageBuilder:
    """Builds, tags, scans and pushes the service images with the docker CLI."""

    def __init__(
        self,
        config: ImagesConfig,
        *,
        session: Optional[LocalSession] = None,
        probe: Optional[ToolProbe] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.config = config
        self.session = session or LocalSession(default_timeout=BUILD_TIMEOUT)
        self.probe = probe or ToolProbe()
        self.environ = os.environ if environ is None else environ
        self.specs = [ImageSpec.from_dict(item) for item in config.services]
        self.source_root = Path(config.source_root)
        self.dockerfile_dir = Path(config.dockerfile_dir)

    @property
    def service_names(self) -> List[str]:
        return [spec.name for spec in self.specs]

    def image_ref(self, service: str, tag: Optional[str] = None) -> str:
        return f"{self.config.registry}/{self.config.namespace}/{service}:{tag or self.config.tag}"

    def select(self, service: str = "all") -> List[ImageSpec]:
        if service == "all":
            return list(self.specs)
        for spec in self.specs:
            if spec.name == service:
                return [spec]
        raise ImageBuildError(f"Unknown service: {service}")

    def _docker(self, args: List[str], description: str, **kwargs) -> None:
        result = self.session.run(["docker", *args], **kwargs)
        if not result.ok:
            raise ImageBuildError(f"{description} failed: {result.stderr.strip()}")

    # ------------------------------------------------------------------ build

    def check_prerequisites(self, specs: Optional[List[ImageSpec]] = None) -> None:
        logger.info("Checking prerequisites...")
        missing = []
        if not self.probe.is_available("docker"):
            missing.append("docker (not installed)")
        elif not self.session.run(["docker", "info"], timeout=60).ok:
            missing.append("docker daemon (not running)")
        for spec in specs if specs is not None else self.specs:
            context = self.source_root / spec.context
            if not context.is_dir():
                missing.append(f"{spec.name} directory ({context})")
        if missing:
            raise PrerequisiteError(missing)
        log_success(logger, "Prerequisites check passed")

    def login_registry(self) -> bool:
        """Log in when pushing is enabled. Returns whether a login happened."""
        if not self.config.push:
            return False
        logger.info("Logging into container registry...")
        registry = self.config.registry
        if registry == "ghcr.io":
            token = self.environ.get("GITHUB_TOKEN")
            if not token:
                logger.warning("GITHUB_TOKEN not set. Skipping registry login.")
                return False
            user = self.environ.get("GITHUB_ACTOR") or getpass.getuser()
            label = "GitHub Container Registry"
        elif registry == "registry.gitlab.com":
            token = self.environ.get("CI_REGISTRY_PASSWORD")
            if not token:
                logger.warning("CI_REGISTRY_PASSWORD not set. Skipping registry login.")
                return False
            user = self.environ.get("CI_REGISTRY_USER", "")
            label = "GitLab Container Registry"
        else:
            logger.warning("Unknown registry: %s. Manual login may be required.", registry)
            return False

        # 密码只走 stdin
        self._docker(
            ["login", registry, "-u", user, "--password-stdin"],
            f"docker login {registry}",
            input_text=token,
            timeout=120,
        )
        log_success(logger, "Logged into %s", label)
        return True

    def build_service(self, spec: ImageSpec) -> str:
        logger.info("Building %s image...", spec.name)
        reference = self.image_ref(spec.name)
        context = self.source_root / spec.context
        args = ["build", "-t", reference]

        dockerfile = self.dockerfile_dir / spec.dockerfile if spec.dockerfile else None
        if dockerfile is not None and dockerfile.is_file():
            args += ["-f", str(dockerfile)]
            for key, default in spec.build_args.items():
                args += ["--build-arg", f"{key}={self.environ.get(key, default)}"]
        args += list(self.config.build_args)
        args.append(str(context))

        self._docker(args, f"Building {spec.name}", timeout=BUILD_TIMEOUT, stream_output=True)
        log_success(logger, "%s image built: %s", spec.name, reference)
        return reference

    def build(self, service: str = "all") -> List[str]:
        specs = self.select(service)
        self.check_prerequisites(specs)
        self.login_registry()
        built = [self.build_service(spec) for spec in specs]
        self.push(specs)
        self.show_info()
        self.cleanup()
        log_success(logger, "Build process completed successfully!")
        return built

    def build_compose(self) -> List[str]:
        self.check_prerequisites()
        self.login_registry()
        logger.info("Building images using Docker Compose...")
        if self.probe.is_available("docker-compose"):
            command = ["docker-compose", "build"]
        else:
            command = ["docker", "compose", "build"]
        result = self.session.run(
            command, cwd=str(self.dockerfile_dir), timeout=BUILD_TIMEOUT, stream_output=True
        )
        if not result.ok:
            raise ImageBuildError(f"docker compose build failed: {result.stderr.strip()}")

        tagged = []
        for spec in self.specs:
            reference = self.image_ref(spec.name)
            self._docker(
                ["tag", f"{self.config.compose_project}_{spec.name}:latest", reference],
                f"Tagging {spec.name}",
                timeout=60,
            )
            tagged.append(reference)
        log_success(logger, "Docker Compose build completed")
        self.push()
        self.show_info()
        self.cleanup()
        return tagged

    # ------------------------------------------------------------------ distribution

    def push(self, specs: Optional[List[ImageSpec]] = None, tag: Optional[str] = None) -> List[str]:
        if not self.config.push:
            logger.info("Skipping image push (PUSH=false)")
            return []
        logger.info("Pushing images to registry...")
        pushed = []
        for spec in specs if specs is not None else self.specs:
            reference = self.image_ref(spec.name, tag)
            logger.info("Pushing %s image...", spec.name)
            self._docker(["push", reference], f"Pushing {reference}", timeout=BUILD_TIMEOUT)
            pushed.append(reference)
        log_success(logger, "All images pushed successfully")
        return pushed

    def tag(self, additional_tag: str) -> List[str]:
        if not additional_tag:
            raise ImageBuildError("tag requires a tag name")
        logger.info("Tagging images with additional tag: %s", additional_tag)
        tagged = []
        for spec in self.specs:
            reference = self.image_ref(spec.name, additional_tag)
            self._docker(["tag", self.image_ref(spec.name), reference], f"Tagging {spec.name}", timeout=60)
            tagged.append(reference)
        log_success(logger, "Images tagged with: %s", additional_tag)
        if self.config.push:
            logger.info("Pushing additional tags...")
            self.push(tag=additional_tag)
        return tagged

    def scan(self) -> List[str]:
        """Scan every image with trivy; findings are warnings and never fail the run."""
        logger.info("Scanning images for vulnerabilities...")
        if not self.probe.is_available("trivy"):
            logger.warning("Trivy not found. Skipping vulnerability scanning.")
            logger.info("Install trivy for vulnerability scanning: https://trivy.dev/")
            return []

        flagged = []
        for spec in self.specs:
            logger.info("Scanning %s image...", spec.name)
            result = self.session.run(
                [
                    "trivy", "image", "--exit-code", "1",
                    "--severity", self.config.scan_severity,
                    self.image_ref(spec.name),
                ],
                timeout=BUILD_TIMEOUT,
            )
            if not result.ok:
                logger.warning("%s image has vulnerabilities", spec.name)
                flagged.append(spec.name)
        log_success(logger, "Vulnerability scanning completed")
        return flagged

    def cleanup(self) -> None:
        logger.info("Cleaning up Docker build cache...")
        self._docker(["image", "prune", "-f"], "Pruning dangling images", timeout=300)
        if self.config.cleanup_cache:
            self._docker(["builder", "prune", "-f"], "Pruning build cache", timeout=600)
            logger.info("Build cache cleaned")
        log_success(logger, "Cleanup completed")

    def show_info(self) -> List[str]:
        logger.info("Built Images:")
        print("================================")
        result = self.session.run(
            ["docker", "images", "--format", "{{.Repository}}:{{.Tag}}\t{{.Size}}\t{{.CreatedAt}}"],
            timeout=60,
        )
        prefixes = tuple(f"{self.config.registry}/{self.config.namespace}/{name}:" for name in self.service_names)
        rows = [line for line in result.stdout.splitlines() if line.startswith(prefixes)] if result.ok else []
        if rows:
            for row in rows:
                print(row)
        else:
            logger.warning("No images found matching the namespace")
        print("")
        logger.info("Image Details:")
        for name in self.service_names:
            print(f"{name}: {self.image_ref(name)}")
        print("")
        return rows

"""YAML manifest loader.

A manifest declares the environments and the desired resources of one
infrastructure repository::

    environments:
      dev:
        variables:
          instance_size: small
      prod:
        variables:
          instance_size: large
    resources:
      - type: instance
        name: web
        attributes:
          size: ${var.instance_size}
          tags: {owner: platform}
        depends_on: [subnet.private]

Resources are shared by every environment; variables differ per environment.
"""

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from aumos_iac_orchestrator.core.models import ResourceDescriptor
from aumos_iac_orchestrator.errors import PlanValidationError, UnknownEnvironmentError
from aumos_iac_orchestrator.observability import get_logger

logger = get_logger(__name__)

DEFAULT_MANIFEST_PATH = Path("infrastructure.yaml")


class EnvironmentSpec(BaseModel):
    """Per-environment section of a manifest."""

    model_config = ConfigDict(frozen=True)

    variables: dict[str, Any] = Field(default_factory=dict)


class Manifest(BaseModel):
    """Parsed infrastructure manifest."""

    model_config = ConfigDict(frozen=True)

    environments: dict[str, EnvironmentSpec] = Field(default_factory=dict)
    resources: tuple[ResourceDescriptor, ...] = ()

    def variables_for(self, environment: str) -> dict[str, Any]:
        """Return the variable set declared for an environment.

        Raises:
            UnknownEnvironmentError: If the manifest does not declare the environment.
        """
        spec = self.environments.get(environment)
        if spec is None:
            raise UnknownEnvironmentError(environment)
        return dict(spec.variables)


def parse_manifest(raw: Any, source: str = "<memory>") -> Manifest:
    """Validate raw manifest data.

    Args:
        raw: Mapping produced by the YAML parser.
        source: Where the data came from, for error context.

    Returns:
        The Manifest.

    Raises:
        PlanValidationError: If the structure is invalid.
    """
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise PlanValidationError(f"Manifest {source} must be a mapping", details={"source": source})
    try:
        return Manifest.model_validate(raw)
    except ValidationError as exc:
        raise PlanValidationError(
            f"Manifest {source} is invalid: {exc.error_count()} error(s)",
            details={"source": source, "errors": exc.errors(include_url=False, include_context=False)},
        ) from exc


def load_manifest(path: Path) -> Manifest:
    """Read and validate a YAML manifest file.

    Args:
        path: Manifest file path.

    Returns:
        The Manifest.

    Raises:
        PlanValidationError: If the file is missing, not valid YAML, or invalid.
    """
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise PlanValidationError(f"Manifest not found: {path}", details={"source": str(path)}) from exc
    except yaml.YAMLError as exc:
        raise PlanValidationError(f"Manifest {path} is not valid YAML: {exc}", details={"source": str(path)}) from exc

    manifest = parse_manifest(raw, source=str(path))
    logger.debug(
        "Manifest loaded",
        path=str(path),
        environments=sorted(manifest.environments),
        resources=len(manifest.resources),
    )
    return manifest

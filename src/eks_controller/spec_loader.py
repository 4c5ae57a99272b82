"""Cluster spec loading with validation.

SECURITY: File operations enforce a size limit and cluster names are
validated before they are used to build paths.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

import yaml
from pydantic import ValidationError

from .config import MAX_SPEC_FILE_SIZE_BYTES, VALID_CLUSTER_NAME_PATTERN
from .models import ClusterSpec, OidcIdentityProviderConfig

logger = logging.getLogger(__name__)

SPEC_FILE_SUFFIX = ".yaml"


class SpecLoadError(Exception):
    """Raised when spec loading or validation fails."""

    pass


def load_cluster_spec(specs_dir: Path, cluster_name: str) -> ClusterSpec:
    """Load and validate a cluster spec from YAML.

    Args:
        specs_dir: Directory containing one ``<cluster>.yaml`` per cluster.
        cluster_name: Name of the EKS cluster.

    Returns:
        Validated spec instance.

    Raises:
        SpecLoadError: If the spec cannot be loaded or fails validation.
    """
    if not re.match(VALID_CLUSTER_NAME_PATTERN, cluster_name):
        raise SpecLoadError(f"Invalid cluster name: {cluster_name!r}")

    spec_path = specs_dir / f"{cluster_name}{SPEC_FILE_SUFFIX}"

    if not spec_path.exists():
        raise SpecLoadError(f"Spec file not found: {spec_path}")

    try:
        file_size = spec_path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat spec file {spec_path}: {e}") from e

    if file_size > MAX_SPEC_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Spec file exceeds maximum size of {MAX_SPEC_FILE_SIZE_BYTES} bytes: {spec_path}"
        )

    try:
        content = spec_path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read spec file {spec_path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {spec_path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Spec file must contain a YAML mapping: {spec_path}")

    # Kubernetes-style wrapper: apiVersion, kind, metadata, spec
    if "apiVersion" in raw_data and "spec" in raw_data:
        spec_data = raw_data.get("spec", {})
        if not isinstance(spec_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {spec_path}")
    else:
        spec_data = raw_data

    spec_data = {"clusterName": cluster_name, **spec_data}

    try:
        spec = ClusterSpec.model_validate(spec_data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            errors.append(f"  - {loc}: {msg}")

        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {spec_path}:\n{error_list}") from e

    if spec.cluster_name != cluster_name:
        raise SpecLoadError(
            f"Spec {spec_path} declares cluster '{spec.cluster_name}', expected '{cluster_name}'"
        )

    logger.info("Loaded spec for cluster '%s' from %s", cluster_name, spec_path)
    return spec


class SpecDirectorySource:
    """Desired-state source backed by a directory of cluster specs."""

    def __init__(self, specs_dir: Path) -> None:
        self._specs_dir = specs_dir

    def clusters(self) -> list[str]:
        """Cluster names with a spec file, sorted."""
        return sorted(path.stem for path in self._specs_dir.glob(f"*{SPEC_FILE_SUFFIX}"))

    def desired(self, cluster_name: str) -> OidcIdentityProviderConfig | None:
        return load_cluster_spec(self._specs_dir, cluster_name).oidc_identity_provider_config

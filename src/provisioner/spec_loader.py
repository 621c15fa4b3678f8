"""Spec file loading with validation.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from .config import MAX_SPEC_FILE_SIZE_BYTES
from .models import ClusterSpec, SpecValidationError

logger = logging.getLogger(__name__)

SPEC_API_VERSION = "provisioner/v1"
SPEC_KIND = "ClusterSpec"


class SpecLoadError(SpecValidationError):
    """Raised when spec loading or validation fails."""

    pass


def load_spec(spec_path: Path) -> ClusterSpec:
    """Load and validate a ClusterSpec from YAML.

    The document is either a bare spec mapping or an envelope::

        apiVersion: provisioner/v1
        kind: ClusterSpec
        metadata: {name: dev-eks}
        spec: {...}

    Args:
        spec_path: Path to the YAML document.

    Returns:
        Validated spec instance.

    Raises:
        SpecLoadError: If the spec cannot be loaded or fails validation.
    """
    if not spec_path.exists():
        raise SpecLoadError(f"Spec file not found: {spec_path}")

    # SECURITY: Check file size before reading to prevent DoS
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

    spec = parse_spec(content, source=str(spec_path))
    logger.info(
        "Loaded cluster spec",
        extra={
            "spec_path": str(spec_path),
            "cloud": spec.cloud.value,
            "cluster": spec.cluster.name,
            "node_pools": len(spec.node_pools),
        },
    )
    return spec


def parse_spec(content: str, source: str = "<string>") -> ClusterSpec:
    """Parse YAML text into a validated ClusterSpec.

    Raises:
        SpecLoadError: If the YAML is malformed or the spec is invalid.
    """
    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {source}: {e}") from e

    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Spec must be a YAML mapping: {source}")

    data = _unwrap_envelope(raw_data, source)

    try:
        return ClusterSpec.parse(data)
    except SpecValidationError as e:
        raise SpecLoadError(f"{source}: {e}") from e


def _unwrap_envelope(raw_data: dict[str, Any], source: str) -> dict[str, Any]:
    if "spec" not in raw_data:
        return raw_data

    api_version = raw_data.get("apiVersion", SPEC_API_VERSION)
    if api_version != SPEC_API_VERSION:
        raise SpecLoadError(
            f"Unsupported apiVersion '{api_version}' in {source}, expected {SPEC_API_VERSION}"
        )

    kind = raw_data.get("kind", SPEC_KIND)
    if kind != SPEC_KIND:
        raise SpecLoadError(f"Unsupported kind '{kind}' in {source}, expected {SPEC_KIND}")

    spec = raw_data["spec"]
    if not isinstance(spec, dict):
        raise SpecLoadError(f"'spec' must be a mapping: {source}")
    return spec

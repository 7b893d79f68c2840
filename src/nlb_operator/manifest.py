"""Manifest file loading with validation.

Used by the offline CLI commands to check and render NLB manifests before
they are applied to the cluster.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_MANIFEST_FILE_SIZE_BYTES
from .models import NLB_KIND, NLBSpec, ResourceKind

logger = logging.getLogger(__name__)


class ManifestLoadError(Exception):
    """Raised when manifest loading or validation fails."""

    pass


def load_manifest(
    manifest_path: Path,
    kinds: dict[str, ResourceKind] | None = None,
) -> NLBSpec:
    """Load and validate an NLB manifest from YAML.

    Both a plain spec mapping and the full object form (apiVersion, kind,
    metadata, spec) are accepted. In the full form the kind must be one of
    the registered kinds.

    Args:
        manifest_path: Path to the YAML file.
        kinds: Kind registry from register_kinds(); defaults to NLB only.

    Returns:
        Validated spec.

    Raises:
        ManifestLoadError: If the file cannot be loaded or fails validation.
    """
    if kinds is None:
        kinds = {NLB_KIND.kind: NLB_KIND}

    if not manifest_path.exists():
        raise ManifestLoadError(f"Manifest file not found: {manifest_path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = manifest_path.stat().st_size
    except OSError as e:
        raise ManifestLoadError(f"Failed to stat manifest file {manifest_path}: {e}") from e

    if file_size > MAX_MANIFEST_FILE_SIZE_BYTES:
        raise ManifestLoadError(
            f"Manifest file exceeds maximum size of {MAX_MANIFEST_FILE_SIZE_BYTES} bytes: "
            f"{manifest_path}"
        )

    try:
        content = manifest_path.read_text(encoding="utf-8")
    except OSError as e:
        raise ManifestLoadError(f"Failed to read manifest file {manifest_path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ManifestLoadError(f"Invalid YAML in {manifest_path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise ManifestLoadError(f"Manifest must contain a YAML mapping: {manifest_path}")

    spec_data = _extract_spec(raw_data, kinds, manifest_path)

    try:
        spec = NLBSpec.model_validate(spec_data)
    except ValidationError as e:
        # Format Pydantic validation errors for readability
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            errors.append(f"  - {loc}: {msg}")

        error_list = "\n".join(errors)
        raise ManifestLoadError(f"Validation failed for {manifest_path}:\n{error_list}") from e

    logger.info("Loaded manifest from %s", manifest_path)
    return spec


def _extract_spec(
    raw_data: dict[str, Any],
    kinds: dict[str, ResourceKind],
    manifest_path: Path,
) -> dict[str, Any]:
    if "apiVersion" not in raw_data or "spec" not in raw_data:
        # Flat format: direct spec content
        return raw_data

    kind_name = raw_data.get("kind")
    kind = kinds.get(str(kind_name))
    if kind is None:
        raise ManifestLoadError(
            f"Unsupported kind '{kind_name}' in {manifest_path}. Registered kinds: {sorted(kinds)}"
        )
    if raw_data.get("apiVersion") != kind.api_version:
        raise ManifestLoadError(
            f"apiVersion must be {kind.api_version} for kind {kind.kind}: {manifest_path}"
        )

    spec_data = raw_data.get("spec")
    if not isinstance(spec_data, dict):
        raise ManifestLoadError(f"Spec section must be a mapping: {manifest_path}")
    return spec_data

"""Manifest loading with validation.

Manifests are YAML files holding one or more records (``---`` separated),
each with ``apiVersion``, ``kind``, ``metadata`` and the kind's fields.
They seed the in-memory store so the operator can run without a cluster.

File reads are size-capped; every document is validated with the model for
its ``kind`` before anything is returned.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_MANIFEST_FILE_SIZE_BYTES
from .models import Resource, get_resource_class
from .store import AlreadyExistsError, ResourceStore

logger = logging.getLogger(__name__)

MANIFEST_SUFFIXES = (".yaml", ".yml")


class ManifestLoadError(Exception):
    """Raised when manifest loading or validation fails."""

    pass


def load_manifest_file(path: Path) -> list[Resource]:
    """Load and validate every record in one YAML file.

    Raises:
        ManifestLoadError: If the file cannot be read, parsed or validated.
    """
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise ManifestLoadError(f"Failed to stat manifest file {path}: {e}") from e

    if file_size > MAX_MANIFEST_FILE_SIZE_BYTES:
        raise ManifestLoadError(
            f"Manifest file exceeds maximum size of {MAX_MANIFEST_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ManifestLoadError(f"Failed to read manifest file {path}: {e}") from e

    try:
        documents = list(yaml.safe_load_all(content))
    except yaml.YAMLError as e:
        raise ManifestLoadError(f"Invalid YAML in {path}: {e}") from e

    records: list[Resource] = []
    for index, document in enumerate(documents):
        if document is None:
            continue
        records.append(_parse_document(document, path, index))
    return records


def _parse_document(document: Any, path: Path, index: int) -> Resource:
    where = f"{path} (document {index})"
    if not isinstance(document, dict):
        raise ManifestLoadError(f"Manifest document must be a YAML mapping: {where}")

    kind = document.get("kind")
    if not kind:
        raise ManifestLoadError(f"Manifest document has no kind: {where}")

    try:
        resource_class = get_resource_class(kind)
    except ValueError as e:
        raise ManifestLoadError(f"{where}: {e}") from e

    api_version = document.get("apiVersion")
    if api_version and api_version != resource_class.API_VERSION:
        raise ManifestLoadError(
            f"{where}: apiVersion {api_version} does not match "
            f"{resource_class.API_VERSION} for kind {kind}"
        )

    try:
        return resource_class.model_validate(document)
    except ValidationError as e:
        # Format Pydantic validation errors for readability
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            errors.append(f"  - {loc}: {msg}")

        error_list = "\n".join(errors)
        raise ManifestLoadError(f"Validation failed for {where}:\n{error_list}") from e


def load_manifests(directory: Path) -> list[Resource]:
    """Load every ``*.yaml``/``*.yml`` file in ``directory``, in name order.

    Raises:
        ManifestLoadError: If the directory is missing or any file is invalid.
    """
    if not directory.is_dir():
        raise ManifestLoadError(f"Manifests directory not found: {directory}")

    paths = sorted(p for p in directory.iterdir() if p.suffix in MANIFEST_SUFFIXES and p.is_file())
    records: list[Resource] = []
    for path in paths:
        loaded = load_manifest_file(path)
        logger.info("Loaded manifest file", extra={"path": str(path), "records": len(loaded)})
        records.extend(loaded)
    return records


async def seed_store(store: ResourceStore, records: list[Resource]) -> int:
    """Create ``records`` in the store, skipping ones that already exist.

    Returns:
        Number of records created.
    """
    created = 0
    for record in records:
        try:
            await store.create(record)
        except AlreadyExistsError:
            logger.warning(
                "Manifest record already exists, skipping",
                extra={"kind": record.KIND, "namespace": record.namespace, "record_name": record.name},
            )
            continue
        created += 1
    return created

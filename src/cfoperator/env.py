"""Environment variables for app workloads.

The app's user-provided environment lives in a Secret named by
``spec.envSecretName``. Variables are returned sorted by name so the
derived workload spec is byte-for-byte stable across reconciles.
"""

from __future__ import annotations

import logging
from typing import Protocol

from .models import CFApp, EnvVar, Secret
from .store import NotFoundError, ResourceStore

logger = logging.getLogger(__name__)


class EnvBuildError(Exception):
    """Raised when an app's environment cannot be assembled."""

    pass


class EnvBuilder(Protocol):
    async def build(self, app: CFApp) -> list[EnvVar]: ...


class AppEnvBuilder:
    """Builds an app's environment from its env Secret."""

    def __init__(self, store: ResourceStore) -> None:
        self._store = store

    async def build(self, app: CFApp) -> list[EnvVar]:
        """Return the app's environment variables sorted by name.

        Raises:
            EnvBuildError: If the env Secret is referenced but missing or
                unreadable.
        """
        if not app.spec.env_secret_name:
            return []

        try:
            secret = await self._store.get(Secret, app.namespace, app.spec.env_secret_name)
        except NotFoundError as e:
            raise EnvBuildError(
                f"error when trying to fetch app env Secret "
                f"{app.namespace}/{app.spec.env_secret_name}: {e}"
            ) from e

        try:
            values = secret.decoded_data()
        except ValueError as e:
            raise EnvBuildError(
                f"app env Secret {app.namespace}/{secret.name} has undecodable data"
            ) from e

        logger.debug("Built app environment", extra={"variable_count": len(values)})
        return [EnvVar(name=k, value=v) for k, v in sorted(values.items())]

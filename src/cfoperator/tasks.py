"""CFTask controller: the task lifecycle state machine.

States:
    New -> Initialized -> (running, inferred from the workload) ->
    Succeeded | Failed -> expired (deleted)

``Canceled`` can be entered from any non-terminal state. A completed task
lives for the configured TTL after its terminal condition transitioned; the
controller requeues itself to fire exactly at expiry and then deletes the
task.

Each pass derives a TaskWorkload (same name, owned by the task) from the
app's current droplet and its single web process, then mirrors the
workload's Started/Succeeded/Failed conditions back onto the task.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from .conditions import (
    find_condition,
    is_status_condition_true,
    set_condition,
    set_status_condition,
)
from .config import DEFAULT_TASK_TTL_SECONDS
from .env import EnvBuilder
from .events import EventRecorder, EventType
from .models import (
    APP_GUID_LABEL,
    PROCESS_TYPE_LABEL,
    PROCESS_TYPE_WEB,
    READY_CONDITION,
    TASK_CANCELED_CONDITION,
    TASK_FAILED_CONDITION,
    TASK_GUID_LABEL,
    TASK_INITIALIZED_CONDITION,
    TASK_STARTED_CONDITION,
    TASK_SUCCEEDED_CONDITION,
    CFApp,
    CFBuild,
    CFProcess,
    CFTask,
    ConditionStatus,
    EnvVar,
    ObjectMeta,
    ResourceRequirements,
    TaskWorkload,
    set_controller_reference,
)
from .reconcile import NotReadyError, PatchingReconciler, Result
from .store import NotFoundError, ResourceStore

logger = logging.getLogger(__name__)

TASK_CANCELED_REASON = "TaskCanceled"
TASK_INITIALIZED_REASON = "TaskInitialized"
LIFECYCLE_LAUNCHER_PATH = "/cnb/lifecycle/launcher"

CPU_REQUEST_RATIO = 1024
CPU_REQUEST_MIN_MILLICORES = 5

_MIRRORED_CONDITIONS = (
    TASK_STARTED_CONDITION,
    TASK_SUCCEEDED_CONDITION,
    TASK_FAILED_CONDITION,
)


class AmbiguousWebProcessError(Exception):
    """Raised when an app does not have exactly one web process."""

    pass


def calculate_default_cpu_request_millicores(memory_mib: int) -> int:
    """CPU request derived from the web process memory, never below 5m."""
    return max(CPU_REQUEST_MIN_MILLICORES, 100 * memory_mib // CPU_REQUEST_RATIO)


def get_completion_time(task: CFTask) -> datetime | None:
    """Transition time of the most recent terminal condition, if any."""
    times = []
    for condition_type in (TASK_SUCCEEDED_CONDITION, TASK_FAILED_CONDITION):
        condition = find_condition(task.status.conditions, condition_type)
        if (
            condition is not None
            and condition.status == ConditionStatus.TRUE
            and condition.last_transition_time is not None
        ):
            times.append(condition.last_transition_time)
    return max(times) if times else None


class TaskReconciler:
    """Domain function for CFTask records."""

    def __init__(
        self,
        store: ResourceStore,
        recorder: EventRecorder,
        env_builder: EnvBuilder,
        task_ttl_seconds: float = DEFAULT_TASK_TTL_SECONDS,
        *,
        default_memory_mb: int = 0,
        default_disk_quota_mb: int = 0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._recorder = recorder
        self._env_builder = env_builder
        self._ttl = timedelta(seconds=task_ttl_seconds)
        self._default_memory_mb = default_memory_mb
        self._default_disk_quota_mb = default_disk_quota_mb
        self._clock = clock or (lambda: datetime.now(UTC))

    async def reconcile_resource(self, task: CFTask) -> Result:
        if task.is_terminating:
            return Result()

        task.status.observed_generation = task.metadata.generation
        logger.debug(
            "Set observed generation", extra={"generation": task.status.observed_generation}
        )

        if self._already_expired(task):
            logger.info("Deleting expired task")
            await self._store.delete(task)
            return Result()

        if task.spec.canceled:
            await self._handle_cancelation(task)
            return self._reconcile_result(task)

        app = await self._get_app(task)
        set_controller_reference(app, task)

        droplet = await self._get_droplet(task, app)
        self._initialize_status(task, droplet)

        web_process = await self._get_web_process(app)
        env = await self._env_builder.build(app)

        workload = await self._create_or_patch_task_workload(task, droplet, web_process, env)
        self._set_task_status(task, workload)

        return self._reconcile_result(task)

    # ------------------------------------------------------------------
    # Dependencies
    # ------------------------------------------------------------------

    async def _get_app(self, task: CFTask) -> CFApp:
        app_name = task.spec.app_ref.name
        try:
            app = await self._store.get(CFApp, task.namespace, app_name)
        except NotFoundError:
            self._recorder.event(
                task,
                EventType.WARNING,
                "AppNotFound",
                f"Did not find app with name {app_name} in namespace {task.namespace}",
            )
            raise

        if not is_status_condition_true(app.status.conditions, READY_CONDITION):
            logger.info("CFApp not ready", extra={"app_name": app.name})
            self._recorder.event(
                task,
                EventType.WARNING,
                "AppNotReady",
                f"App {app.namespace}:{app.name} is not ready",
            )
            raise NotReadyError("AppNotReady", f"app {app.name} not ready")

        if not app.spec.current_droplet_ref.name:
            logger.info("App droplet ref not set", extra={"app_name": app.name})
            self._recorder.event(
                task,
                EventType.WARNING,
                "AppCurrentDropletRefNotSet",
                f"App {app_name} does not have a current droplet",
            )
            raise NotReadyError("AppCurrentDropletRefNotSet", "app droplet ref not set")

        return app

    async def _get_droplet(self, task: CFTask, app: CFApp) -> CFBuild:
        droplet_name = app.spec.current_droplet_ref.name
        try:
            build = await self._store.get(CFBuild, app.namespace, droplet_name)
        except NotFoundError:
            self._recorder.event(
                task,
                EventType.WARNING,
                "AppCurrentDropletNotFound",
                f"Current droplet {droplet_name} for app {app.name} does not exist",
            )
            raise

        if build.status.droplet is None:
            logger.info("Droplet build status not set", extra={"droplet_name": droplet_name})
            self._recorder.event(
                task,
                EventType.WARNING,
                "DropletBuildStatusNotSet",
                f"Current droplet {droplet_name} from app {app.name} does not have a droplet image",
            )
            raise NotReadyError("DropletBuildStatusNotSet", "droplet build status not set")

        return build

    async def _get_web_process(self, app: CFApp) -> CFProcess:
        processes = await self._store.list(
            CFProcess,
            namespace=app.namespace,
            labels={APP_GUID_LABEL: app.name, PROCESS_TYPE_LABEL: PROCESS_TYPE_WEB},
        )
        if len(processes) != 1:
            raise AmbiguousWebProcessError(
                f"expected exactly one web process, found {len(processes)}"
            )
        return processes[0]

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def _initialize_status(self, task: CFTask, droplet: CFBuild) -> None:
        task.status.droplet_ref.name = droplet.name
        if task.status.memory_mb == 0:
            task.status.memory_mb = self._default_memory_mb
        if task.status.disk_quota_mb == 0:
            task.status.disk_quota_mb = self._default_disk_quota_mb
        set_status_condition(
            task.status.conditions,
            TASK_INITIALIZED_CONDITION,
            True,
            reason=TASK_INITIALIZED_REASON,
            generation=task.metadata.generation,
            now=self._clock(),
        )

    def _set_task_status(self, task: CFTask, workload: TaskWorkload) -> None:
        for condition_type in _MIRRORED_CONDITIONS:
            condition = find_condition(workload.status.conditions, condition_type)
            if condition is None:
                continue
            mirrored = condition.model_copy(
                update={"observed_generation": task.metadata.generation}
            )
            set_condition(task.status.conditions, mirrored, now=self._clock())

    async def _handle_cancelation(self, task: CFTask) -> None:
        try:
            await self._store.delete(TaskWorkload.reference(task.name, task.namespace))
        except NotFoundError:
            pass

        now = self._clock()
        set_status_condition(
            task.status.conditions,
            TASK_CANCELED_CONDITION,
            True,
            reason=TASK_CANCELED_REASON,
            generation=task.metadata.generation,
            now=now,
        )

        if not is_status_condition_true(task.status.conditions, TASK_SUCCEEDED_CONDITION):
            set_status_condition(
                task.status.conditions,
                TASK_FAILED_CONDITION,
                True,
                reason=TASK_CANCELED_REASON,
                generation=task.metadata.generation,
                now=now,
            )

    # ------------------------------------------------------------------
    # Workload
    # ------------------------------------------------------------------

    async def _create_or_patch_task_workload(
        self,
        task: CFTask,
        droplet: CFBuild,
        web_process: CFProcess,
        env: list[EnvVar],
    ) -> TaskWorkload:
        existing: TaskWorkload | None
        try:
            existing = await self._store.get(TaskWorkload, task.namespace, task.name)
        except NotFoundError:
            existing = None

        workload = (
            existing.deep_copy()
            if existing is not None
            else TaskWorkload(metadata=ObjectMeta(name=task.name, namespace=task.namespace))
        )
        self._mutate_task_workload(workload, task, droplet, web_process, env)

        if existing is None:
            created = await self._store.create(workload)
            self._recorder.event(
                task,
                EventType.NORMAL,
                "TaskWorkloadCreated",
                f"Created task workload {created.name}",
            )
            return created

        return await self._store.patch(workload, existing)

    def _mutate_task_workload(
        self,
        workload: TaskWorkload,
        task: CFTask,
        droplet: CFBuild,
        web_process: CFProcess,
        env: list[EnvVar],
    ) -> None:
        assert droplet.status.droplet is not None

        workload.metadata.labels[TASK_GUID_LABEL] = task.name
        workload.spec.command = [LIFECYCLE_LAUNCHER_PATH, task.spec.command]
        workload.spec.image = droplet.status.droplet.registry.image
        workload.spec.image_pull_secrets = [
            ref.model_copy() for ref in droplet.status.droplet.registry.image_pull_secrets
        ]

        memory = f"{task.status.memory_mb}M"
        disk = f"{task.status.disk_quota_mb}M"
        cpu = f"{calculate_default_cpu_request_millicores(web_process.spec.memory_mb)}m"
        workload.spec.resources = ResourceRequirements(
            requests={"memory": memory, "ephemeral-storage": disk, "cpu": cpu},
            limits={"memory": memory, "ephemeral-storage": disk},
        )
        workload.spec.env = sorted(env, key=lambda var: var.name)

        set_controller_reference(task, workload)

    # ------------------------------------------------------------------
    # TTL
    # ------------------------------------------------------------------

    def _reconcile_result(self, task: CFTask) -> Result:
        completed_at = get_completion_time(task)
        if completed_at is None:
            return Result()
        remaining = (completed_at + self._ttl - self._clock()).total_seconds()
        if remaining <= 0:
            return Result(requeue=True)
        return Result(requeue_after=remaining)

    def _already_expired(self, task: CFTask) -> bool:
        completed_at = get_completion_time(task)
        if completed_at is None:
            return False
        return self._clock() >= completed_at + self._ttl


def new_task_reconciler(
    store: ResourceStore,
    recorder: EventRecorder,
    env_builder: EnvBuilder,
    task_ttl_seconds: float = DEFAULT_TASK_TTL_SECONDS,
    *,
    default_memory_mb: int = 0,
    default_disk_quota_mb: int = 0,
    clock: Callable[[], datetime] | None = None,
) -> PatchingReconciler[CFTask]:
    return PatchingReconciler(
        store,
        CFTask,
        TaskReconciler(
            store,
            recorder,
            env_builder,
            task_ttl_seconds,
            default_memory_mb=default_memory_mb,
            default_disk_quota_mb=default_disk_quota_mb,
            clock=clock,
        ),
        name="cftask",
        clock=clock,
    )

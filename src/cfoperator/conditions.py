"""Status condition helpers.

Conditions are stored as a list keyed by ``type``: setting a condition
replaces the entry of the same type or appends a new one. The transition
time only moves when the status value actually changes, so re-applying the
same condition on every reconcile does not produce a write.
"""

from __future__ import annotations

from datetime import UTC, datetime

from .models import READY_CONDITION, Condition, ConditionStatus

READY_REASON = "Ready"
UNKNOWN_REASON = "Unknown"
INVALID_SPEC_REASON = "InvalidSpec"


def _now() -> datetime:
    return datetime.now(UTC)


def set_condition(
    conditions: list[Condition],
    condition: Condition,
    now: datetime | None = None,
) -> bool:
    """Replace-or-append ``condition`` by type.

    Transition times are truncated to whole seconds, like the wire format.

    Returns:
        True if the list changed.
    """
    stamp = (now or _now()).replace(microsecond=0)

    for i, existing in enumerate(conditions):
        if existing.type != condition.type:
            continue

        updated = existing.model_copy(
            update={
                "reason": condition.reason,
                "message": condition.message,
                "observed_generation": condition.observed_generation,
            }
        )
        if existing.status != condition.status:
            updated.status = condition.status
            updated.last_transition_time = condition.last_transition_time or stamp

        changed = updated != existing
        conditions[i] = updated
        return changed

    new = condition.model_copy()
    if new.last_transition_time is None:
        new.last_transition_time = stamp
    conditions.append(new)
    return True


def set_status_condition(
    conditions: list[Condition],
    condition_type: str,
    status: ConditionStatus | bool,
    reason: str,
    message: str = "",
    generation: int = 0,
    now: datetime | None = None,
) -> bool:
    """Convenience wrapper around :func:`set_condition`."""
    if isinstance(status, bool):
        status = ConditionStatus.TRUE if status else ConditionStatus.FALSE
    return set_condition(
        conditions,
        Condition(
            type=condition_type,
            status=status,
            reason=reason,
            message=message,
            observed_generation=generation,
        ),
        now=now,
    )


def find_condition(conditions: list[Condition], condition_type: str) -> Condition | None:
    for condition in conditions:
        if condition.type == condition_type:
            return condition
    return None


def is_status_condition_true(conditions: list[Condition], condition_type: str) -> bool:
    condition = find_condition(conditions, condition_type)
    return condition is not None and condition.status == ConditionStatus.TRUE


def remove_condition(conditions: list[Condition], condition_type: str) -> bool:
    for i, condition in enumerate(conditions):
        if condition.type == condition_type:
            del conditions[i]
            return True
    return False


class ReadyConditionBuilder:
    """Builds the composite ``Ready`` condition.

    Defaults to ``False`` with reason ``Unknown``. A ``True`` status always
    carries reason and message ``Ready``.
    """

    def __init__(self, generation: int = 0) -> None:
        self._generation = generation
        self._status = ConditionStatus.FALSE
        self._reason = UNKNOWN_REASON
        self._message = ""

    def with_status(self, ready: bool) -> ReadyConditionBuilder:
        self._status = ConditionStatus.TRUE if ready else ConditionStatus.FALSE
        return self

    def with_reason(self, reason: str) -> ReadyConditionBuilder:
        self._reason = reason
        return self

    def with_message(self, message: str) -> ReadyConditionBuilder:
        self._message = message
        return self

    def with_error(self, err: BaseException | None) -> ReadyConditionBuilder:
        """Derive reason and message from a reconcile error."""
        # Imported lazily: reconcile imports this module.
        from .reconcile import NotReadyError, PermanentReconcileError

        if err is None:
            return self.with_status(True)

        self._status = ConditionStatus.FALSE
        if isinstance(err, NotReadyError):
            self._reason = err.reason
            self._message = err.condition_message
        elif isinstance(err, PermanentReconcileError):
            self._reason = INVALID_SPEC_REASON
            self._message = str(err)
        else:
            self._reason = UNKNOWN_REASON
            self._message = str(err)
        return self

    def build(self) -> Condition:
        if self._status == ConditionStatus.TRUE:
            reason = message = READY_REASON
        else:
            reason = self._reason or UNKNOWN_REASON
            message = self._message

        return Condition(
            type=READY_CONDITION,
            status=self._status,
            reason=reason,
            message=message,
            observed_generation=self._generation,
        )

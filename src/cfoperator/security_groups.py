"""Security group controller: compiles CFSecurityGroups into network policies.

A security group produces:
- one namespaced NetworkPolicy ``default.<name>`` per space it is bound to
- one cluster-scoped GlobalNetworkPolicy ``default.<name>`` when it is
  globally enabled for running and/or staging workloads

Policies are not owned by the group (they live in other namespaces), so the
controller cleans them up itself: orphaned space policies on every pass, and
everything on deletion, guarded by a finalizer.
"""

from __future__ import annotations

import logging

from .egress import (
    POLICY_TYPE_EGRESS,
    build_egress_rules,
    build_selector,
)
from .models import (
    SECURITY_GROUP_TYPE_GLOBAL,
    SECURITY_GROUP_TYPE_LABEL,
    SECURITY_GROUP_TYPE_SPACE_SCOPED,
    SPACE_GUID_LABEL,
    CFSecurityGroup,
    GlobalNetworkPolicy,
    NetworkPolicy,
    NetworkPolicySpec,
    ObjectMeta,
    PolicyRule,
    SecurityGroupWorkloads,
    add_finalizer,
    remove_finalizer,
)
from .reconcile import PatchingReconciler, Result
from .store import NotFoundError, ResourceStore

logger = logging.getLogger(__name__)

SECURITY_GROUP_FINALIZER = "cfSecurityGroup.korifi.cloudfoundry.org"
POLICY_NAME_PREFIX = "default."
GLOBAL_NAMESPACE_SELECTOR = f"has({SPACE_GUID_LABEL})"


def policy_name(security_group: CFSecurityGroup) -> str:
    return f"{POLICY_NAME_PREFIX}{security_group.name}"


class SecurityGroupReconciler:
    """Domain function for CFSecurityGroup records."""

    def __init__(self, store: ResourceStore) -> None:
        self._store = store

    async def reconcile_resource(self, sg: CFSecurityGroup) -> Result:
        sg.status.observed_generation = sg.metadata.generation
        logger.debug(
            "Set observed generation", extra={"generation": sg.status.observed_generation}
        )

        if sg.is_terminating:
            return await self._finalize(sg)

        global_enabled = sg.spec.globally_enabled.running or sg.spec.globally_enabled.staging

        # Translate before writing anything: an invalid rule must not leave
        # half of the policies updated.
        egress: list[PolicyRule] = []
        if sg.spec.spaces or global_enabled:
            egress = build_egress_rules(sg.spec.rules)
            if add_finalizer(sg, SECURITY_GROUP_FINALIZER):
                logger.debug("Added finalizer")

        if sg.spec.spaces:
            sg.metadata.labels[SECURITY_GROUP_TYPE_LABEL] = SECURITY_GROUP_TYPE_SPACE_SCOPED
            for namespace, workloads in sorted(sg.spec.spaces.items()):
                await self._reconcile_space_policy(sg, namespace, workloads, egress)

        if global_enabled:
            sg.metadata.labels[SECURITY_GROUP_TYPE_LABEL] = SECURITY_GROUP_TYPE_GLOBAL
            await self._reconcile_global_policy(sg, egress)

        await self._clean_orphaned_policies(sg)

        logger.debug("CFSecurityGroup reconciled")
        return Result()

    async def _reconcile_space_policy(
        self,
        sg: CFSecurityGroup,
        namespace: str,
        workloads: SecurityGroupWorkloads,
        egress: list[PolicyRule],
    ) -> None:
        desired = NetworkPolicySpec(
            egress=egress,
            types=[POLICY_TYPE_EGRESS],
            selector=build_selector(workloads),
        )
        name = policy_name(sg)

        try:
            existing = await self._store.get(NetworkPolicy, namespace, name)
        except NotFoundError:
            policy = NetworkPolicy(
                metadata=ObjectMeta(
                    name=name,
                    namespace=namespace,
                    labels={SECURITY_GROUP_TYPE_LABEL: SECURITY_GROUP_TYPE_SPACE_SCOPED},
                ),
                spec=desired,
            )
            await self._store.create(policy)
            logger.info(
                "Created NetworkPolicy",
                extra={"policy_namespace": namespace, "policy_name": name},
            )
            return

        updated = existing.deep_copy()
        updated.spec = desired
        updated.metadata.labels[SECURITY_GROUP_TYPE_LABEL] = SECURITY_GROUP_TYPE_SPACE_SCOPED
        await self._store.patch(updated, existing)

    async def _reconcile_global_policy(
        self, sg: CFSecurityGroup, egress: list[PolicyRule]
    ) -> None:
        desired = NetworkPolicySpec(
            egress=egress,
            types=[POLICY_TYPE_EGRESS],
            selector=build_selector(sg.spec.globally_enabled),
            namespace_selector=GLOBAL_NAMESPACE_SELECTOR,
        )
        name = policy_name(sg)

        try:
            existing = await self._store.get(GlobalNetworkPolicy, None, name)
        except NotFoundError:
            policy = GlobalNetworkPolicy(
                metadata=ObjectMeta(
                    name=name,
                    labels={SECURITY_GROUP_TYPE_LABEL: SECURITY_GROUP_TYPE_GLOBAL},
                ),
                spec=desired,
            )
            await self._store.create(policy)
            logger.info("Created GlobalNetworkPolicy", extra={"policy_name": name})
            return

        updated = existing.deep_copy()
        updated.spec = desired
        updated.metadata.labels[SECURITY_GROUP_TYPE_LABEL] = SECURITY_GROUP_TYPE_GLOBAL
        await self._store.patch(updated, existing)

    async def _clean_orphaned_policies(self, sg: CFSecurityGroup) -> None:
        policies = await self._store.list(
            NetworkPolicy,
            fields={"metadata.name": policy_name(sg)},
            labels={SECURITY_GROUP_TYPE_LABEL: SECURITY_GROUP_TYPE_SPACE_SCOPED},
        )
        for policy in policies:
            if policy.namespace in sg.spec.spaces:
                continue
            await self._delete_ignoring_not_found(policy)
            logger.info(
                "Deleted orphaned NetworkPolicy",
                extra={"policy_namespace": policy.namespace, "policy_name": policy.name},
            )

        if not sg.spec.globally_enabled.running and not sg.spec.globally_enabled.staging:
            try:
                global_policy = await self._store.get(GlobalNetworkPolicy, None, policy_name(sg))
            except NotFoundError:
                return
            await self._delete_ignoring_not_found(global_policy)
            logger.info(
                "Deleted orphaned GlobalNetworkPolicy", extra={"policy_name": global_policy.name}
            )

    async def _finalize(self, sg: CFSecurityGroup) -> Result:
        if SECURITY_GROUP_FINALIZER not in sg.metadata.finalizers:
            return Result()

        name = policy_name(sg)
        for policy in await self._store.list(NetworkPolicy, fields={"metadata.name": name}):
            await self._delete_ignoring_not_found(policy)

        for policy in await self._store.list(GlobalNetworkPolicy, fields={"metadata.name": name}):
            await self._delete_ignoring_not_found(policy)

        if remove_finalizer(sg, SECURITY_GROUP_FINALIZER):
            logger.debug("Finalizer removed")
        return Result()

    async def _delete_ignoring_not_found(self, policy: NetworkPolicy | GlobalNetworkPolicy) -> None:
        try:
            await self._store.delete(policy)
        except NotFoundError:
            logger.debug("Policy already gone", extra={"policy_name": policy.name})


def new_security_group_reconciler(store: ResourceStore) -> PatchingReconciler[CFSecurityGroup]:
    return PatchingReconciler(
        store,
        CFSecurityGroup,
        SecurityGroupReconciler(store),
        name="cfsecuritygroup",
    )

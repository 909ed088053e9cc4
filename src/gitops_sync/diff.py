# ABOUTME: Diff engine computing ordered patch sequences between desired and live state
# ABOUTME: Dependency-ranked creates/updates first, reverse-ranked deletes last

"""
Diff Engine.

=============================================================================
CLASSIFICATION
=============================================================================

For every desired manifest:

    absent in live                  -> Create
    present, spec differs           -> Update (carries the live resourceVersion)
    present, spec equal             -> nothing

For every ref in the prior-applied-set that is no longer desired:

    present in live                 -> Delete (only when prune is on)
    absent in live                  -> nothing

Refs the Application never applied are never deleted, whatever the cluster
contains.

=============================================================================
ORDERING
=============================================================================

Creates and Updates are ordered by kind rank (namespaces first, then
priority classes, policies, service accounts, secrets and config maps,
storage, RBAC, services, workloads, ingress), ties broken by manifest
declaration order. Deletes follow, in reverse rank, ties broken by
(namespace, name) descending. Same inputs always give the same sequence.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from gitops_sync.models import Patch, PatchOp

if TYPE_CHECKING:
    from collections.abc import Iterable

    from gitops_sync.models import DesiredState, LiveState, ResourceRef

KIND_ORDER: tuple[str, ...] = (
    "Namespace",
    "PriorityClass",
    "NetworkPolicy",
    "ResourceQuota",
    "LimitRange",
    "PodSecurityPolicy",
    "PodDisruptionBudget",
    "ServiceAccount",
    "Secret",
    "SecretList",
    "ConfigMap",
    "StorageClass",
    "PersistentVolume",
    "PersistentVolumeClaim",
    "CustomResourceDefinition",
    "ClusterRole",
    "ClusterRoleList",
    "ClusterRoleBinding",
    "ClusterRoleBindingList",
    "Role",
    "RoleList",
    "RoleBinding",
    "RoleBindingList",
    "Service",
    "DaemonSet",
    "Pod",
    "ReplicationController",
    "ReplicaSet",
    "Deployment",
    "HorizontalPodAutoscaler",
    "StatefulSet",
    "Job",
    "CronJob",
    "IngressClass",
    "Ingress",
    "APIService",
)

_RANK = {kind: i for i, kind in enumerate(KIND_ORDER)}


def kind_rank(kind: str) -> int:
    """Install rank of a kind; unknown kinds (custom resources) go after all known ones."""
    return _RANK.get(kind, len(KIND_ORDER))


def diff(
    desired: DesiredState,
    live: LiveState,
    prior_applied: Iterable[ResourceRef] = (),
    prune: bool = True,
) -> list[Patch]:
    """
    Compute the ordered patch sequence converging ``live`` to ``desired``.

    Args:
        desired: Manifests at one revision.
        live: Snapshot covering at least the desired refs and prior_applied.
        prior_applied: Refs this Application owned after its previous pass.
        prune: Whether to emit Deletes for owned refs no longer desired.

    Returns:
        Creates/Updates in dependency order, then Deletes in reverse order.
    """
    upserts: list[tuple[int, int, Patch]] = []
    for position, manifest in enumerate(desired):
        current = live.get(manifest.ref)
        if current is None:
            patch = Patch(PatchOp.CREATE, manifest.ref, manifest.spec)
        elif current.spec != manifest.spec:
            patch = Patch(PatchOp.UPDATE, manifest.ref, manifest.spec, current.resource_version)
        else:
            continue
        upserts.append((kind_rank(manifest.kind), position, patch))

    deletes: list[Patch] = []
    if prune:
        wanted = set(desired.refs)
        for ref in set(prior_applied) - wanted:
            current = live.get(ref)
            if current is not None:
                deletes.append(Patch(PatchOp.DELETE, ref, current.spec, current.resource_version))

    upserts.sort(key=lambda item: (item[0], item[1]))
    deletes.sort(
        key=lambda p: (kind_rank(p.ref.kind), p.ref.namespace, p.ref.name, p.ref.kind),
        reverse=True,
    )
    return [patch for _, _, patch in upserts] + deletes


def owned_after(
    desired: DesiredState,
    live: LiveState,
    prior_applied: Iterable[ResourceRef],
    applied: Iterable[Patch],
) -> set[ResourceRef]:
    """
    Prior-applied-set to carry into the next pass.

    Keeps every desired or previously owned ref that exists in the cluster,
    adds what this pass created or updated, and drops what it deleted. A
    Delete that never ran (pass aborted, prune off) keeps its ref owned so a
    later pass can still remove it.
    """
    applied = list(applied)
    created = {p.ref for p in applied if p.op != PatchOp.DELETE}
    deleted = {p.ref for p in applied if p.op == PatchOp.DELETE}
    candidates = set(prior_applied) | set(desired.refs)
    return ((candidates & live.present()) | created) - deleted

"""Tests for reconciling a single Application."""

from collections.abc import Callable
from typing import Any

import pytest

from gitops_local.cluster import InMemoryCluster, Mutation
from gitops_local.controller import ControllerConfig, Reconciler, SyncedArtifact
from gitops_local.controller.reconciler import DRIFT, HARD_REFRESH, POLL
from gitops_local.diff import DiffAction
from gitops_local.exceptions import FetchError
from gitops_local.manifest import (
    TRACKING_LABEL,
    Application,
    NamedResource,
    normalize_document,
)
from gitops_local.status import (
    ApplicationPhase,
    Condition,
    ConditionType,
    HealthStatus,
    Initiator,
    OperationPhase,
    ResourceResult,
    ResourceStatus,
    ResultCode,
    SyncStatus,
)
from gitops_local.store import InMemoryStore, StoreEvent

from ..fakes import (
    FakeFetcher,
    SleepRecorder,
    application,
    config_map,
    deployment,
    namespace,
)

WEB = NamedResource("Deployment", "guestbook", "web")
SETTINGS = NamedResource("ConfigMap", "guestbook", "settings")
STALE = NamedResource("ConfigMap", "guestbook", "stale")

MakeReconciler = Callable[..., Reconciler]


@pytest.fixture
def make_reconciler(
    store: InMemoryStore,
    fetcher: FakeFetcher,
    cluster: InMemoryCluster,
    config: ControllerConfig,
) -> MakeReconciler:
    """Add an Application to the store and return its Reconciler."""

    def make(app: Application, live: InMemoryCluster | None = None) -> Reconciler:
        store.add_application(app)
        return Reconciler(app.resource_id, store, fetcher, live or cluster, config)

    return make


def stale_config_map(cluster: InMemoryCluster) -> None:
    """Create a live ConfigMap left behind by an earlier revision."""
    cluster.create(
        config_map(
            "stale", namespace="guestbook", labels={TRACKING_LABEL: "guestbook"}
        )
    )


async def test_compare_out_of_sync(
    make_reconciler: MakeReconciler,
    store: InMemoryStore,
    fetcher: FakeFetcher,
    cluster: InMemoryCluster,
) -> None:
    """Test a comparison reports missing resources without changing the cluster."""
    fetcher.manifests = [deployment()]
    app = application()
    reconciler = make_reconciler(app)

    assert await reconciler.reconcile(frozenset({POLL})) is None

    status = store.get_status(app.resource_id)
    assert status
    assert status.phase == ApplicationPhase.OUT_OF_SYNC
    assert status.sync_status == SyncStatus.OUT_OF_SYNC
    assert status.health_status == HealthStatus.MISSING
    assert status.revision == "rev-1"
    assert status.resources == [
        ResourceStatus(WEB, SyncStatus.OUT_OF_SYNC, HealthStatus.MISSING)
    ]
    assert status.operation is None
    assert cluster.mutations == []
    assert store.get_history(app.resource_id) == []


async def test_status_versions_and_phases(
    make_reconciler: MakeReconciler,
    store: InMemoryStore,
    fetcher: FakeFetcher,
) -> None:
    """Test every status update is a new version following the state machine."""
    fetcher.manifests = [deployment()]
    app = application()
    reconciler = make_reconciler(app)
    updates = []
    store.add_listener(
        StoreEvent.STATUS_UPDATED, lambda rid, status: updates.append(status)
    )

    await reconciler.sync()

    assert [status.phase for status in updates] == [
        ApplicationPhase.COMPARING,
        ApplicationPhase.OUT_OF_SYNC,
        ApplicationPhase.SYNCING,
        ApplicationPhase.SYNCED,
    ]
    assert [status.version for status in updates] == [1, 2, 3, 4]
    assert all(status.reconciled_at is not None for status in updates)


async def test_manual_sync(
    make_reconciler: MakeReconciler,
    store: InMemoryStore,
    fetcher: FakeFetcher,
    cluster: InMemoryCluster,
) -> None:
    """Test a manual sync applies resources in kind order and records history."""
    fetcher.manifests = [deployment(), config_map("settings")]
    app = application()
    reconciler = make_reconciler(app)

    status = await reconciler.sync()

    assert status.phase == ApplicationPhase.SYNCED
    assert status.sync_status == SyncStatus.SYNCED
    assert status.health_status == HealthStatus.HEALTHY
    assert status.conditions == []
    assert cluster.mutations == [
        Mutation("apply", SETTINGS),
        Mutation("apply", WEB),
    ]
    live = cluster.objects()[WEB]
    assert live["metadata"]["labels"][TRACKING_LABEL] == "guestbook"

    assert status.operation
    assert status.operation.initiated_by == Initiator.MANUAL
    assert status.operation.phase == OperationPhase.SUCCEEDED
    assert status.operation.message == "Successfully synced"
    assert status.operation.results == [
        ResourceResult(SETTINGS, ResultCode.SYNCED, 1, "ConfigMap created"),
        ResourceResult(WEB, ResultCode.SYNCED, 1, "Deployment created"),
    ]

    history = store.get_history(app.resource_id)
    assert len(history) == 1
    assert history[0].id == 1
    assert history[0].revision == "rev-1"
    assert history[0].initiated_by == Initiator.MANUAL
    assert history[0].phase == OperationPhase.SUCCEEDED

    synced = store.get_artifact(app.resource_id, SyncedArtifact)
    assert synced
    assert synced.revision == "rev-1"


async def test_sync_is_idempotent(
    make_reconciler: MakeReconciler,
    store: InMemoryStore,
    fetcher: FakeFetcher,
    cluster: InMemoryCluster,
) -> None:
    """Test syncing an already synced Application makes no changes."""
    fetcher.manifests = [deployment(), config_map("settings")]
    app = application()
    reconciler = make_reconciler(app)
    await reconciler.sync()
    cluster.mutations.clear()

    status = await reconciler.sync()

    assert cluster.mutations == []
    assert status.phase == ApplicationPhase.SYNCED
    assert status.operation
    assert status.operation.phase == OperationPhase.SUCCEEDED
    assert status.operation.results == []
    assert [entry.id for entry in store.get_history(app.resource_id)] == [1, 2]


async def test_manual_policy_never_applies(
    make_reconciler: MakeReconciler,
    store: InMemoryStore,
    fetcher: FakeFetcher,
    cluster: InMemoryCluster,
) -> None:
    """Test polling an Application without automated sync only compares."""
    fetcher.manifests = [deployment()]
    app = application(automated=False)
    reconciler = make_reconciler(app)

    for _ in range(3):
        await reconciler.reconcile(frozenset({POLL}))

    assert cluster.mutations == []
    assert WEB not in cluster.objects()
    status = store.get_status(app.resource_id)
    assert status
    assert status.phase == ApplicationPhase.OUT_OF_SYNC


async def test_empty_diff_never_applies(
    make_reconciler: MakeReconciler,
    store: InMemoryStore,
    fetcher: FakeFetcher,
    cluster: InMemoryCluster,
) -> None:
    """Test an automated Application matching live state is left alone."""
    fetcher.manifests = [deployment()]
    app = application(automated=True, self_heal=True, prune=True)
    cluster.create(normalize_document(deployment(), app))
    reconciler = make_reconciler(app)

    await reconciler.reconcile(frozenset({POLL}))

    status = store.get_status(app.resource_id)
    assert status
    assert status.phase == ApplicationPhase.SYNCED
    assert status.health_status == HealthStatus.HEALTHY
    assert cluster.mutations == []
    assert store.get_history(app.resource_id) == []


async def test_automated_sync(
    make_reconciler: MakeReconciler,
    store: InMemoryStore,
    fetcher: FakeFetcher,
    cluster: InMemoryCluster,
) -> None:
    """Test an automated Application is synced once per revision."""
    fetcher.manifests = [deployment(replicas=2)]
    app = application(automated=True)
    reconciler = make_reconciler(app)

    await reconciler.reconcile(frozenset({POLL}))

    status = store.get_status(app.resource_id)
    assert status
    assert status.phase == ApplicationPhase.SYNCED
    assert status.health_status == HealthStatus.HEALTHY
    assert cluster.objects()[WEB]["spec"]["replicas"] == 2
    history = store.get_history(app.resource_id)
    assert [entry.initiated_by for entry in history] == [Initiator.AUTOMATED]

    # A new revision scales the deployment
    fetcher.manifests = [deployment(replicas=3)]
    fetcher.revision = "rev-2"
    await reconciler.reconcile(frozenset({POLL}))

    status = store.get_status(app.resource_id)
    assert status
    assert status.phase == ApplicationPhase.SYNCED
    assert status.revision == "rev-2"
    assert status.health_status == HealthStatus.HEALTHY
    assert cluster.objects()[WEB]["spec"]["replicas"] == 3
    assert cluster.mutations == [Mutation("apply", WEB), Mutation("apply", WEB)]
    assert [entry.revision for entry in store.get_history(app.resource_id)] == [
        "rev-1",
        "rev-2",
    ]

    # Nothing changed since the last poll
    await reconciler.reconcile(frozenset({POLL}))
    assert len(cluster.mutations) == 2
    assert len(store.get_history(app.resource_id)) == 2


async def test_rendered_state_reused(
    make_reconciler: MakeReconciler,
    fetcher: FakeFetcher,
) -> None:
    """Test the source is only rendered again for a new revision or hard refresh."""
    fetcher.manifests = [deployment()]
    reconciler = make_reconciler(application())

    await reconciler.reconcile(frozenset({POLL}))
    await reconciler.reconcile(frozenset({POLL}))
    assert fetcher.resolves == 2
    assert fetcher.renders == 1

    fetcher.revision = "rev-2"
    await reconciler.reconcile(frozenset({POLL}))
    assert fetcher.renders == 2

    await reconciler.reconcile(frozenset({HARD_REFRESH}))
    assert fetcher.hard_resolves == 1
    assert fetcher.renders == 3


async def test_prune_after_applies(
    make_reconciler: MakeReconciler,
    store: InMemoryStore,
    fetcher: FakeFetcher,
    cluster: InMemoryCluster,
) -> None:
    """Test extra resources are deleted only after every apply succeeded."""
    stale_config_map(cluster)
    fetcher.manifests = [deployment(), config_map("settings")]
    app = application(automated=True, prune=True)
    reconciler = make_reconciler(app)

    await reconciler.reconcile(frozenset({POLL}))

    assert cluster.mutations == [
        Mutation("apply", SETTINGS),
        Mutation("apply", WEB),
        Mutation("delete", STALE),
    ]
    assert STALE not in cluster.objects()
    status = store.get_status(app.resource_id)
    assert status
    assert status.phase == ApplicationPhase.SYNCED
    assert status.operation
    assert ResourceResult(STALE, ResultCode.PRUNED, 1, "pruned") in status.operation.results
    assert [r.resource_id for r in status.resources] == [WEB, SETTINGS]


async def test_failed_apply_blocks_prune(
    make_reconciler: MakeReconciler,
    store: InMemoryStore,
    fetcher: FakeFetcher,
    cluster: InMemoryCluster,
) -> None:
    """Test nothing is pruned when a create fails."""
    stale_config_map(cluster)
    cluster.fail(WEB, transient=False, message="admission webhook denied the request")
    fetcher.manifests = [deployment(), config_map("settings")]
    app = application(automated=True, prune=True)
    reconciler = make_reconciler(app)

    await reconciler.reconcile(frozenset({POLL}))

    assert cluster.mutations == [Mutation("apply", SETTINGS)]
    assert STALE in cluster.objects()
    assert cluster.attempts[("apply", WEB)] == 1

    status = store.get_status(app.resource_id)
    assert status
    assert status.phase == ApplicationPhase.DEGRADED
    assert status.operation
    assert status.operation.phase == OperationPhase.FAILED
    assert status.operation.message == "1 resource(s) failed to sync"
    assert status.operation.results == [
        ResourceResult(SETTINGS, ResultCode.SYNCED, 1, "ConfigMap created"),
        ResourceResult(
            WEB, ResultCode.SYNC_FAILED, 1, "admission webhook denied the request"
        ),
        ResourceResult(STALE, ResultCode.PENDING, 0, "not attempted"),
    ]
    assert (
        Condition(
            ConditionType.APPLY_ERROR,
            "Deployment/guestbook/web: admission webhook denied the request",
        )
        in status.conditions
    )
    assert store.get_artifact(app.resource_id, SyncedArtifact) is None
    history = store.get_history(app.resource_id)
    assert [entry.phase for entry in history] == [OperationPhase.FAILED]


async def test_prune_disabled(
    make_reconciler: MakeReconciler,
    store: InMemoryStore,
    fetcher: FakeFetcher,
    cluster: InMemoryCluster,
) -> None:
    """Test extra resources are reported but kept when prune is disabled."""
    stale_config_map(cluster)
    fetcher.manifests = [deployment(), config_map("settings")]
    app = application(automated=True, prune=False)
    reconciler = make_reconciler(app)

    await reconciler.reconcile(frozenset({POLL}))

    assert STALE in cluster.objects()
    assert all(mutation.action == "apply" for mutation in cluster.mutations)
    status = store.get_status(app.resource_id)
    assert status
    assert status.phase == ApplicationPhase.OUT_OF_SYNC
    assert status.operation
    assert status.operation.phase == OperationPhase.SUCCEEDED
    assert status.operation.message == "1 resource(s) require pruning"
    assert (
        ResourceResult(STALE, ResultCode.PRUNE_SKIPPED, 0, "ignored (requires pruning)")
        in status.operation.results
    )
    stale = next(r for r in status.resources if r.resource_id == STALE)
    assert stale.requires_pruning

    # Only pruning is left, which an automated sync never does
    await reconciler.reconcile(frozenset({POLL}))
    assert len(cluster.mutations) == 2
    assert len(store.get_history(app.resource_id)) == 1
    status = store.get_status(app.resource_id)
    assert status
    assert status.phase == ApplicationPhase.OUT_OF_SYNC


async def test_prune_last_waits_for_health(
    make_reconciler: MakeReconciler,
    store: InMemoryStore,
    fetcher: FakeFetcher,
) -> None:
    """Test resources are not pruned while applied resources are unhealthy."""
    live = InMemoryCluster(simulate_status=False)
    live.create(namespace("guestbook"))
    stale_config_map(live)
    fetcher.manifests = [deployment(), config_map("settings")]
    app = application(automated=True, prune=True, sync_options=["PruneLast=true"])
    reconciler = make_reconciler(app, live)

    await reconciler.reconcile(frozenset({POLL}))

    assert STALE in live.objects()
    assert [mutation.action for mutation in live.mutations] == ["apply", "apply"]
    status = store.get_status(app.resource_id)
    assert status
    assert status.phase == ApplicationPhase.DEGRADED


async def test_retry_limit(
    make_reconciler: MakeReconciler,
    store: InMemoryStore,
    fetcher: FakeFetcher,
    cluster: InMemoryCluster,
    sleep: SleepRecorder,
) -> None:
    """Test a transient failure is retried with backoff up to the limit."""
    cluster.fail(WEB, message="etcdserver: request timed out")
    fetcher.manifests = [deployment()]
    app = application(automated=True)
    reconciler = make_reconciler(app)

    await reconciler.reconcile(frozenset({POLL}))

    assert cluster.attempts[("apply", WEB)] == 5
    assert sleep.delays == [5.0, 10.0, 20.0, 40.0]
    status = store.get_status(app.resource_id)
    assert status
    assert status.phase == ApplicationPhase.DEGRADED
    assert status.operation
    assert status.operation.results == [
        ResourceResult(WEB, ResultCode.SYNC_FAILED, 5, "etcdserver: request timed out")
    ]


async def test_retry_strategy(
    make_reconciler: MakeReconciler,
    fetcher: FakeFetcher,
    cluster: InMemoryCluster,
    sleep: SleepRecorder,
) -> None:
    """Test the retry strategy of the sync policy bounds attempts and delays."""
    cluster.fail(WEB)
    fetcher.manifests = [deployment()]
    app = application(
        automated=True,
        retry={
            "limit": 3,
            "backoff": {"duration": "1s", "factor": 3, "maxDuration": "2s"},
        },
    )
    reconciler = make_reconciler(app)

    await reconciler.reconcile(frozenset({POLL}))

    assert cluster.attempts[("apply", WEB)] == 3
    assert sleep.delays == [1.0, 2.0]


async def test_transient_failure_recovers(
    make_reconciler: MakeReconciler,
    store: InMemoryStore,
    fetcher: FakeFetcher,
    cluster: InMemoryCluster,
    sleep: SleepRecorder,
) -> None:
    """Test an apply succeeds after transient failures."""
    cluster.fail(WEB, times=2)
    fetcher.manifests = [deployment()]
    app = application(automated=True)
    reconciler = make_reconciler(app)

    await reconciler.reconcile(frozenset({POLL}))

    status = store.get_status(app.resource_id)
    assert status
    assert status.phase == ApplicationPhase.SYNCED
    assert status.operation
    assert status.operation.results == [
        ResourceResult(WEB, ResultCode.SYNCED, 3, "Deployment created")
    ]
    assert sleep.delays == [5.0, 10.0]


async def test_failed_sync_not_repeated(
    make_reconciler: MakeReconciler,
    store: InMemoryStore,
    fetcher: FakeFetcher,
    cluster: InMemoryCluster,
) -> None:
    """Test a failed automated sync is not retried for the same revision."""
    cluster.fail(WEB, transient=False)
    fetcher.manifests = [deployment()]
    app = application(automated=True)
    reconciler = make_reconciler(app)

    await reconciler.reconcile(frozenset({POLL}))
    await reconciler.reconcile(frozenset({POLL}))

    assert cluster.attempts[("apply", WEB)] == 1
    assert len(store.get_history(app.resource_id)) == 1
    status = store.get_status(app.resource_id)
    assert status
    assert status.phase == ApplicationPhase.OUT_OF_SYNC
    assert [c.type for c in status.conditions] == [ConditionType.SYNC_ERROR]
    assert "previous sync failed" in status.conditions[0].message

    # A new revision is synced again
    fetcher.revision = "rev-2"
    await reconciler.reconcile(frozenset({POLL}))
    assert cluster.attempts[("apply", WEB)] == 2


async def test_failed_sync_repeated_with_self_heal(
    make_reconciler: MakeReconciler,
    store: InMemoryStore,
    fetcher: FakeFetcher,
    cluster: InMemoryCluster,
) -> None:
    """Test a failed automated sync is retried on every poll with self heal."""
    cluster.fail(WEB, transient=False)
    fetcher.manifests = [deployment()]
    app = application(automated=True, self_heal=True)
    reconciler = make_reconciler(app)

    await reconciler.reconcile(frozenset({POLL}))
    await reconciler.reconcile(frozenset({POLL}))

    assert cluster.attempts[("apply", WEB)] == 2
    assert len(store.get_history(app.resource_id)) == 2


async def test_self_heal(
    make_reconciler: MakeReconciler,
    store: InMemoryStore,
    fetcher: FakeFetcher,
    cluster: InMemoryCluster,
) -> None:
    """Test drift is reverted by a drift check with self heal enabled."""
    fetcher.manifests = [deployment(replicas=2)]
    app = application(automated=True, self_heal=True)
    reconciler = make_reconciler(app)
    await reconciler.reconcile(frozenset({POLL}))
    cluster.mutations.clear()

    cluster.edit(WEB, {"spec": {"replicas": 5}})
    await reconciler.reconcile(frozenset({DRIFT}))

    assert cluster.mutations == [Mutation("apply", WEB)]
    assert cluster.objects()[WEB]["spec"]["replicas"] == 2
    status = store.get_status(app.resource_id)
    assert status
    assert status.phase == ApplicationPhase.SYNCED
    assert status.conditions == []
    history = store.get_history(app.resource_id)
    assert [entry.initiated_by for entry in history] == [
        Initiator.AUTOMATED,
        Initiator.SELF_HEAL,
    ]
    assert fetcher.resolves == 1


async def test_self_heal_recreates_deleted(
    make_reconciler: MakeReconciler,
    fetcher: FakeFetcher,
    cluster: InMemoryCluster,
) -> None:
    """Test a resource deleted out of band is created again."""
    fetcher.manifests = [deployment()]
    app = application(automated=True, self_heal=True)
    reconciler = make_reconciler(app)
    await reconciler.reconcile(frozenset({POLL}))

    cluster.remove(WEB)
    await reconciler.reconcile(frozenset({DRIFT}))

    assert WEB in cluster.objects()


async def test_drift_reported_without_self_heal(
    make_reconciler: MakeReconciler,
    store: InMemoryStore,
    fetcher: FakeFetcher,
    cluster: InMemoryCluster,
) -> None:
    """Test drift is reported but never reverted with self heal disabled."""
    fetcher.manifests = [deployment(replicas=2)]
    app = application(automated=True, self_heal=False)
    reconciler = make_reconciler(app)
    await reconciler.reconcile(frozenset({POLL}))
    cluster.mutations.clear()

    cluster.edit(WEB, {"spec": {"replicas": 5}})
    await reconciler.reconcile(frozenset({DRIFT}))

    assert cluster.mutations == []
    assert cluster.objects()[WEB]["spec"]["replicas"] == 5
    status = store.get_status(app.resource_id)
    assert status
    assert status.phase == ApplicationPhase.OUT_OF_SYNC
    assert status.conditions == [
        Condition(
            ConditionType.DRIFT_ERROR,
            "Live state drifted from last sync: Deployment/guestbook/web",
        )
    ]
    version = status.version

    # The same drift is not published again
    await reconciler.reconcile(frozenset({DRIFT}))
    status = store.get_status(app.resource_id)
    assert status
    assert status.version == version

    # A poll at the same revision keeps reporting the drift
    await reconciler.reconcile(frozenset({POLL}))
    assert cluster.mutations == []
    status = store.get_status(app.resource_id)
    assert status
    assert status.phase == ApplicationPhase.OUT_OF_SYNC
    assert [c.type for c in status.conditions] == [ConditionType.DRIFT_ERROR]


async def test_status_changes_are_not_drift(
    make_reconciler: MakeReconciler,
    store: InMemoryStore,
    fetcher: FakeFetcher,
    cluster: InMemoryCluster,
) -> None:
    """Test fields written by other controllers are not drift."""
    fetcher.manifests = [deployment()]
    app = application(automated=True, self_heal=True)
    reconciler = make_reconciler(app)
    await reconciler.reconcile(frozenset({POLL}))
    status = store.get_status(app.resource_id)
    assert status
    cluster.mutations.clear()

    cluster.set_status(WEB, {"observedGeneration": 1, "replicas": 1, "readyReplicas": 0})
    await reconciler.reconcile(frozenset({DRIFT}))

    assert cluster.mutations == []
    assert store.get_status(app.resource_id) == status


async def test_fetch_error(
    make_reconciler: MakeReconciler,
    store: InMemoryStore,
    fetcher: FakeFetcher,
    cluster: InMemoryCluster,
) -> None:
    """Test an unreachable source keeps the last phase and backs off."""
    fetcher.manifests = [deployment()]
    app = application(automated=True)
    reconciler = make_reconciler(app)
    await reconciler.reconcile(frozenset({POLL}))
    cluster.mutations.clear()

    fetcher.error = FetchError("connection refused")
    assert await reconciler.reconcile(frozenset({POLL})) == 5.0
    assert await reconciler.reconcile(frozenset({POLL})) == 10.0

    status = store.get_status(app.resource_id)
    assert status
    assert status.phase == ApplicationPhase.SYNCED
    assert status.revision == "rev-1"
    assert status.conditions == [
        Condition(ConditionType.FETCH_ERROR, "connection refused")
    ]
    assert cluster.mutations == []

    fetcher.error = None
    assert await reconciler.reconcile(frozenset({POLL})) is None
    status = store.get_status(app.resource_id)
    assert status
    assert status.conditions == []


async def test_fetch_error_before_first_compare(
    make_reconciler: MakeReconciler,
    store: InMemoryStore,
    fetcher: FakeFetcher,
) -> None:
    """Test an unreachable source leaves a new Application Unknown."""
    fetcher.error = FetchError("repository not found")
    app = application(automated=True)
    reconciler = make_reconciler(app)

    assert await reconciler.reconcile(frozenset({POLL})) == 5.0

    status = store.get_status(app.resource_id)
    assert status
    assert status.phase == ApplicationPhase.UNKNOWN
    assert [c.type for c in status.conditions] == [ConditionType.FETCH_ERROR]


async def test_validation_error(
    make_reconciler: MakeReconciler,
    store: InMemoryStore,
    fetcher: FakeFetcher,
    cluster: InMemoryCluster,
) -> None:
    """Test nothing is applied when any document is invalid."""
    fetcher.manifests = [
        deployment(),
        {"apiVersion": "v1", "kind": "ConfigMap", "metadata": {}},
    ]
    app = application(automated=True)
    reconciler = make_reconciler(app)

    assert await reconciler.reconcile(frozenset({POLL})) is None

    assert cluster.mutations == []
    status = store.get_status(app.resource_id)
    assert status
    assert status.phase == ApplicationPhase.UNKNOWN
    assert status.sync_status == SyncStatus.UNKNOWN
    assert [c.type for c in status.conditions] == [ConditionType.VALIDATION_ERROR]
    assert "metadata.name" in status.conditions[0].message


async def test_missing_namespace_is_invalid(
    make_reconciler: MakeReconciler,
    store: InMemoryStore,
    fetcher: FakeFetcher,
    cluster: InMemoryCluster,
) -> None:
    """Test a namespaced resource needs a namespace from somewhere."""
    fetcher.manifests = [deployment()]
    app = application(automated=True, dest_namespace=None)
    reconciler = make_reconciler(app)

    await reconciler.reconcile(frozenset({POLL}))

    assert cluster.mutations == []
    status = store.get_status(app.resource_id)
    assert status
    assert status.conditions
    assert status.conditions[0].type == ConditionType.VALIDATION_ERROR
    assert "has no namespace" in status.conditions[0].message


async def test_create_namespace(
    make_reconciler: MakeReconciler,
    store: InMemoryStore,
    fetcher: FakeFetcher,
    cluster: InMemoryCluster,
) -> None:
    """Test the destination namespace is created before anything else."""
    fetcher.manifests = [deployment()]
    app = application(dest_namespace="fresh", sync_options=["CreateNamespace=true"])
    reconciler = make_reconciler(app)

    status = await reconciler.sync()

    fresh = NamedResource("Namespace", None, "fresh")
    assert cluster.mutations == [
        Mutation("apply", fresh),
        Mutation("apply", NamedResource("Deployment", "fresh", "web")),
    ]
    assert status.phase == ApplicationPhase.SYNCED
    # The created namespace is not managed and never pruned
    assert TRACKING_LABEL not in cluster.objects()[fresh]["metadata"].get("labels", {})


async def test_missing_namespace_fails(
    make_reconciler: MakeReconciler,
    store: InMemoryStore,
    fetcher: FakeFetcher,
    cluster: InMemoryCluster,
) -> None:
    """Test applying into a namespace that does not exist fails without retries."""
    fetcher.manifests = [deployment()]
    app = application(dest_namespace="fresh")
    reconciler = make_reconciler(app)

    status = await reconciler.sync()

    assert status.phase == ApplicationPhase.DEGRADED
    assert status.operation
    assert status.operation.results[0].attempts == 1
    assert status.operation.results[0].message == 'namespaces "fresh" not found'


async def test_namespace_applied_first(
    make_reconciler: MakeReconciler,
    fetcher: FakeFetcher,
    cluster: InMemoryCluster,
) -> None:
    """Test a Namespace document is applied before its contents, even in a later wave."""
    fetcher.manifests = [
        deployment(namespace="other", wave=-5),
        namespace("other", wave=5),
    ]
    reconciler = make_reconciler(application())

    status = await reconciler.sync()

    assert status.phase == ApplicationPhase.SYNCED
    assert cluster.mutations == [
        Mutation("apply", NamedResource("Namespace", None, "other")),
        Mutation("apply", NamedResource("Deployment", "other", "web")),
    ]


async def test_sync_waves(
    make_reconciler: MakeReconciler,
    fetcher: FakeFetcher,
    cluster: InMemoryCluster,
) -> None:
    """Test resources are applied by sync wave, then by kind."""
    fetcher.manifests = [
        config_map("late", wave=1),
        deployment(wave=0),
        config_map("early"),
    ]
    reconciler = make_reconciler(application())

    await reconciler.sync()

    assert [mutation.resource_id.name for mutation in cluster.mutations] == [
        "early",
        "web",
        "late",
    ]


async def test_health_grace_period(
    make_reconciler: MakeReconciler,
    store: InMemoryStore,
    fetcher: FakeFetcher,
    sleep: SleepRecorder,
) -> None:
    """Test resources that never become healthy degrade the Application."""
    live = InMemoryCluster(simulate_status=False)
    live.create(namespace("guestbook"))
    fetcher.manifests = [deployment()]
    app = application()
    reconciler = make_reconciler(app, live)

    status = await reconciler.sync()

    assert sleep.delays == [1.0, 1.0, 1.0]
    assert status.phase == ApplicationPhase.DEGRADED
    assert status.health_status == HealthStatus.PROGRESSING
    assert status.operation
    assert status.operation.phase == OperationPhase.FAILED
    assert status.operation.message == "Resources still Progressing after 3.0s"


async def test_sync_timeout(
    store: InMemoryStore,
    fetcher: FakeFetcher,
    sleep: SleepRecorder,
) -> None:
    """Test a sync that takes too long is abandoned."""
    live = InMemoryCluster(latency=0.05)
    live.create(namespace("guestbook"))
    fetcher.manifests = [deployment()]
    app = application()
    store.add_application(app)
    config = ControllerConfig(sync_timeout=0.02, sleep=sleep)
    reconciler = Reconciler(app.resource_id, store, fetcher, live, config)

    status = await reconciler.sync()

    assert status.phase == ApplicationPhase.DEGRADED
    assert status.sync_status == SyncStatus.UNKNOWN
    assert status.operation
    assert status.operation.phase == OperationPhase.TIMEOUT
    assert status.operation.message == "Sync timed out after 0.02s"
    assert status.operation.results == [
        ResourceResult(WEB, ResultCode.PENDING, 0, "not attempted")
    ]
    history = store.get_history(app.resource_id)
    assert [entry.phase for entry in history] == [OperationPhase.TIMEOUT]


async def test_apply_timeout(
    store: InMemoryStore,
    fetcher: FakeFetcher,
    sleep: SleepRecorder,
) -> None:
    """Test a cluster call that takes too long is a transient failure."""
    live = InMemoryCluster(latency=0.05)
    live.create(namespace("guestbook"))
    fetcher.manifests = [deployment()]
    app = application(retry={"limit": 2})
    store.add_application(app)
    config = ControllerConfig(apply_timeout=0.01, sleep=sleep)
    reconciler = Reconciler(app.resource_id, store, fetcher, live, config)

    status = await reconciler.sync()

    assert status.phase == ApplicationPhase.DEGRADED
    assert status.operation
    assert status.operation.results == [
        ResourceResult(WEB, ResultCode.SYNC_FAILED, 2, "timed out after 0.01s")
    ]
    assert sleep.delays == [5.0]
    assert live.mutations == []


async def test_history_limit(
    store: InMemoryStore,
    fetcher: FakeFetcher,
    cluster: InMemoryCluster,
    sleep: SleepRecorder,
) -> None:
    """Test only the most recent sync operations are kept."""
    fetcher.manifests = [deployment()]
    app = application()
    store.add_application(app)
    config = ControllerConfig(history_limit=2, sleep=sleep)
    reconciler = Reconciler(app.resource_id, store, fetcher, cluster, config)

    for _ in range(3):
        await reconciler.sync()

    assert [entry.id for entry in store.get_history(app.resource_id)] == [2, 3]


async def test_compare_does_not_publish(
    make_reconciler: MakeReconciler,
    store: InMemoryStore,
    fetcher: FakeFetcher,
) -> None:
    """Test a standalone comparison leaves the status alone."""
    fetcher.manifests = [deployment()]
    app = application()
    reconciler = make_reconciler(app)

    result = await reconciler.compare()

    assert result.sync_status == SyncStatus.OUT_OF_SYNC
    assert [(d.resource_id, d.action) for d in result.diffs] == [
        (WEB, DiffAction.CREATE)
    ]
    assert store.get_status(app.resource_id) is None


async def test_removed_application(
    make_reconciler: MakeReconciler,
    store: InMemoryStore,
    fetcher: FakeFetcher,
) -> None:
    """Test a pass for an Application no longer in the store does nothing."""
    app = application()
    reconciler = make_reconciler(app)
    store.remove_application(app.resource_id)

    assert await reconciler.reconcile(frozenset({POLL})) is None
    assert fetcher.resolves == 0


async def test_self_heal_keeps_partial_rollout(
    make_reconciler: MakeReconciler,
    store: InMemoryStore,
    fetcher: FakeFetcher,
    cluster: InMemoryCluster,
) -> None:
    """Test self heal never reverts a newer revision that partly applied."""
    fetcher.manifests = [config_map("settings", data={"key": "v1"})]
    app = application(automated=True, self_heal=True)
    reconciler = make_reconciler(app)
    await reconciler.reconcile(frozenset({POLL}))

    fetcher.revision = "rev-2"
    fetcher.manifests = [config_map("settings", data={"key": "v2"}), deployment()]
    cluster.fail(WEB, transient=False)
    await reconciler.reconcile(frozenset({POLL}))
    status = store.get_status(app.resource_id)
    assert status
    assert status.phase == ApplicationPhase.DEGRADED
    assert status.revision == "rev-2"
    assert cluster.objects()[SETTINGS]["data"] == {"key": "v2"}
    cluster.mutations.clear()

    await reconciler.reconcile(frozenset({DRIFT}))

    assert cluster.mutations == []
    assert cluster.objects()[SETTINGS]["data"] == {"key": "v2"}
    history = store.get_history(app.resource_id)
    assert [(entry.revision, entry.initiated_by) for entry in history] == [
        ("rev-1", Initiator.AUTOMATED),
        ("rev-2", Initiator.AUTOMATED),
    ]


async def test_unexpected_compare_error(
    make_reconciler: MakeReconciler,
    store: InMemoryStore,
    fetcher: FakeFetcher,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Test a comparison that fails unexpectedly still settles the phase."""

    async def render(source: Any, revision: str) -> list[Any]:
        raise UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid start byte")

    monkeypatch.setattr(fetcher, "render", render)
    app = application(automated=True)
    reconciler = make_reconciler(app)

    assert await reconciler.reconcile(frozenset({POLL})) is None

    status = store.get_status(app.resource_id)
    assert status
    assert status.phase == ApplicationPhase.UNKNOWN
    assert [c.type for c in status.conditions] == [ConditionType.SYNC_ERROR]
    assert status.conditions[0].message.startswith("UnicodeDecodeError")


async def test_unexpected_sync_error(
    make_reconciler: MakeReconciler,
    store: InMemoryStore,
    fetcher: FakeFetcher,
    cluster: InMemoryCluster,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Test a sync that fails unexpectedly ends Degraded with a history entry."""

    async def apply(doc: dict[str, Any]) -> dict[str, Any]:
        raise ValueError("Expecting value")

    monkeypatch.setattr(cluster, "apply", apply)
    fetcher.manifests = [deployment()]
    app = application()
    reconciler = make_reconciler(app)

    status = await reconciler.sync()

    assert status.phase == ApplicationPhase.DEGRADED
    assert status.operation
    assert status.operation.phase == OperationPhase.FAILED
    assert status.operation.message == "ValueError: Expecting value"
    history = store.get_history(app.resource_id)
    assert [(entry.initiated_by, entry.phase) for entry in history] == [
        (Initiator.MANUAL, OperationPhase.FAILED)
    ]

    # The next drift check and poll are not blocked by the failed pass
    await reconciler.reconcile(frozenset({POLL}))
    status = store.get_status(app.resource_id)
    assert status
    assert status.phase == ApplicationPhase.OUT_OF_SYNC


async def test_validation_error_without_strict_checks(
    make_reconciler: MakeReconciler,
    store: InMemoryStore,
    fetcher: FakeFetcher,
    cluster: InMemoryCluster,
) -> None:
    """Test malformed labels are rejected when strict validation is disabled."""
    doc = config_map("settings")
    doc["metadata"]["labels"] = ["a"]
    fetcher.manifests = [doc]
    app = application(automated=True, sync_options=["Validate=false"])
    reconciler = make_reconciler(app)

    await reconciler.reconcile(frozenset({POLL}))

    assert cluster.mutations == []
    status = store.get_status(app.resource_id)
    assert status
    assert status.phase == ApplicationPhase.UNKNOWN
    assert [c.type for c in status.conditions] == [ConditionType.VALIDATION_ERROR]

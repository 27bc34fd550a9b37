"""
Reconciliation of a single Application.

A reconcile pass drives the Application through its state machine:

    Unknown -> Comparing -> Synced | OutOfSync
    OutOfSync -> Syncing -> Synced | Degraded

A comparison resolves the source revision, renders and validates the desired
documents, observes the live objects and computes a structural diff. A sync
applies the out of sync resources in plan order, prunes extra resources when
enabled, waits for health to settle and then compares again.

A drift check is a cheaper pass that compares live objects against the
desired state of the last sync, without fetching the source again.

Every pass ends by publishing a new ApplicationStatus record to the store.
Errors raised while reconciling become conditions on that record.
"""

import asyncio
from collections.abc import Awaitable, Callable
import dataclasses
import logging
import math
from typing import Any, TypeVar

from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from gitops_local.cluster import Cluster
from gitops_local.context import trace_context
from gitops_local.diff import (
    DiffAction,
    DiffResult,
    ResourceDiff,
    SyncPlan,
    build_plan,
    compare,
    matches,
)
from gitops_local.exceptions import (
    ApplyError,
    DriftError,
    FetchError,
    GitOpsException,
    ValidationError,
)
from gitops_local.health import assess_health
from gitops_local.manifest import (
    NAMESPACE_KIND,
    TRACKING_LABEL,
    Application,
    NamedResource,
    is_namespaced,
    normalize_document,
    resource_id_for,
    validate_documents,
)
from gitops_local.source import SourceArtifact, SourceFetcher
from gitops_local.status import (
    ApplicationPhase,
    ApplicationStatus,
    Condition,
    ConditionType,
    HealthStatus,
    Initiator,
    OperationPhase,
    OperationState,
    ResourceResult,
    ResourceStatus,
    ResultCode,
    SyncHistoryEntry,
    SyncStatus,
    aggregate_health,
    check_transition,
    utcnow,
)
from gitops_local.store import Store

from .artifact import SyncedArtifact
from .config import ControllerConfig

__all__ = [
    "Reconciler",
    "POLL",
    "REFRESH",
    "HARD_REFRESH",
    "SYNC",
    "DRIFT",
    "FETCH_RETRY",
]

_LOGGER = logging.getLogger(__name__)

# Reasons for a reconcile pass
POLL = "poll"
REFRESH = "refresh"
HARD_REFRESH = "hard-refresh"
SYNC = "sync"
DRIFT = "drift"
FETCH_RETRY = "fetch-retry"

COMPARE_REASONS = {POLL, REFRESH, HARD_REFRESH, SYNC, FETCH_RETRY}

SETTLED_HEALTH = {HealthStatus.HEALTHY, HealthStatus.SUSPENDED}

T = TypeVar("T")

Desired = dict[NamedResource, dict[str, Any]]
Live = dict[NamedResource, dict[str, Any] | None]


def _is_transient(err: BaseException) -> bool:
    return isinstance(err, ApplyError) and err.transient


@dataclasses.dataclass
class _Comparison:
    """Everything learned from one comparison of desired and live state."""

    revision: str
    desired: Desired
    result: DiffResult
    resources: list[ResourceStatus]
    health: HealthStatus
    conditions: list[Condition]


class Reconciler:
    """Reconciles one Application against one cluster.

    The reconciler holds no state of its own besides the count of
    consecutive fetch failures used for backoff. Everything else is read
    from and written to the store.
    """

    def __init__(
        self,
        resource_id: NamedResource,
        store: Store,
        fetcher: SourceFetcher,
        cluster: Cluster,
        config: ControllerConfig | None = None,
    ) -> None:
        """Initialize the Reconciler.

        Args:
            resource_id: The identifier of the Application to reconcile
            store: The central store holding the Application and its status
            fetcher: Fetches desired state from the Application source
            cluster: The destination cluster
            config: Timing and concurrency settings
        """
        self._resource_id = resource_id
        self._store = store
        self._fetcher = fetcher
        self._cluster = cluster
        self._config = config or ControllerConfig()
        self._fetch_failures = 0

    @property
    def resource_id(self) -> NamedResource:
        return self._resource_id

    def _application(self) -> Application:
        if (app := self._store.get_application(self._resource_id)) is None:
            raise GitOpsException(f"Application {self._resource_id} is not in the store")
        return app

    def _publish(self, **changes: Any) -> ApplicationStatus:
        """Replace the status record, enforcing the state machine."""
        current = self._store.get_status(self._resource_id) or ApplicationStatus()
        status = dataclasses.replace(current, reconciled_at=utcnow(), **changes)
        check_transition(current.phase, status.phase)
        return self._store.update_status(self._resource_id, status)

    def _current_status(self) -> ApplicationStatus:
        return self._store.get_status(self._resource_id) or ApplicationStatus()

    async def reconcile(self, reasons: frozenset[str]) -> float | None:
        """Run one reconcile pass for the set of reasons that triggered it.

        Returns the delay before the pass should be retried, if the desired
        or live state could not be read.
        """
        if self._store.get_application(self._resource_id) is None:
            _LOGGER.debug("Application %s removed, skipping pass", self._resource_id)
            return None
        previous = self._current_status()
        with trace_context(f"Application {self._resource_id.namespaced_name}"):
            try:
                if reasons & COMPARE_REASONS:
                    initiator = Initiator.MANUAL if SYNC in reasons else None
                    return await self._compare_and_sync(
                        hard=HARD_REFRESH in reasons, initiator=initiator
                    )
                if DRIFT in reasons:
                    await self._check_drift()
            except Exception as err:
                _LOGGER.exception(
                    "Unexpected error reconciling %s", self._resource_id.namespaced_name
                )
                self._abort(previous, err)
        return None

    def _abort(self, previous: ApplicationStatus, err: Exception) -> None:
        """Leave the Comparing or Syncing phase of a pass that failed unexpectedly."""
        if isinstance(err, GitOpsException):
            condition = Condition.from_exception(err)
        else:
            condition = Condition(
                type=ConditionType.SYNC_ERROR, message=f"{type(err).__name__}: {err}"
            )
        current = self._current_status()
        if current.phase == ApplicationPhase.SYNCING:
            operation = current.operation
            if operation is not None and operation.finished_at is None:
                operation = dataclasses.replace(
                    operation,
                    phase=OperationPhase.FAILED,
                    finished_at=utcnow(),
                    message=condition.message,
                )
                self._add_history(operation)
            self._publish(
                phase=ApplicationPhase.DEGRADED,
                operation=operation,
                conditions=[*current.conditions, condition],
            )
        elif current.phase == ApplicationPhase.COMPARING:
            phase = previous.phase
            if phase in (ApplicationPhase.COMPARING, ApplicationPhase.SYNCING):
                phase = ApplicationPhase.UNKNOWN
            self._publish(phase=phase, conditions=[condition])

    def _add_history(self, operation: OperationState) -> None:
        history = self._store.get_history(self._resource_id)
        self._store.add_history(
            self._resource_id,
            SyncHistoryEntry(
                id=history[-1].id + 1 if history else 1,
                revision=operation.revision,
                initiated_by=operation.initiated_by,
                phase=operation.phase,
                started_at=operation.started_at,
                finished_at=operation.finished_at or utcnow(),
                message=operation.message,
            ),
            limit=self._config.history_limit,
        )

    async def _fetch(self, app: Application, hard: bool) -> SourceArtifact:
        """Return the rendered desired state, reusing it while the revision is unchanged."""
        with trace_context("Fetch"):
            if hard:
                self._store.clear_artifact(self._resource_id, SourceArtifact)
            revision = await self._fetcher.resolve(app.source, hard)
            cached = self._store.get_artifact(self._resource_id, SourceArtifact)
            if (
                cached is not None
                and cached.revision == revision
                and cached.repo_url == app.source.repo_url
                and cached.path == app.source.path
            ):
                _LOGGER.debug("Reusing rendered desired state at revision %s", revision)
                return cached
            manifests = await self._fetcher.render(app.source, revision)
            artifact = SourceArtifact(
                repo_url=app.source.repo_url,
                revision=revision,
                path=app.source.path,
                manifests=manifests,
            )
            self._store.set_artifact(self._resource_id, artifact)
            return artifact

    def _desired(self, app: Application, manifests: list[Any]) -> Desired:
        """Validate all documents, then normalize them for the destination."""
        resource_ids = validate_documents(
            manifests,
            app.destination.namespace,
            strict=app.sync_policy.sync_options.validate,
        )
        desired: Desired = {}
        for resource_id, doc in zip(resource_ids, manifests):
            if is_namespaced(resource_id.kind) and not resource_id.namespace:
                raise ValidationError(
                    f"Resource {resource_id} has no namespace and the Application "
                    "has no destination namespace"
                )
            desired[resource_id] = normalize_document(doc, app)
        return desired

    async def _observe(self, resource_ids: list[NamedResource]) -> Live:
        """Read the live objects for a set of resources."""
        sem = asyncio.Semaphore(self._config.apply_concurrency)

        async def get(resource_id: NamedResource) -> tuple[NamedResource, Any]:
            async with sem:
                return resource_id, await self._cluster.get(resource_id)

        return dict(await asyncio.gather(*(get(rid) for rid in resource_ids)))

    async def _managed(self, app: Application, kinds: set[str]) -> Desired:
        """Read the live objects carrying the tracking label of the Application."""
        objs = await self._cluster.list_managed(TRACKING_LABEL, app.name, kinds)
        return {NamedResource.from_doc(obj): obj for obj in objs}

    def _known_kinds(self, desired: Desired) -> set[str]:
        """Kinds that may hold managed resources: desired now or at the last sync."""
        kinds = {rid.kind for rid in desired}
        if synced := self._store.get_artifact(self._resource_id, SyncedArtifact):
            kinds.update(doc["kind"] for doc in synced.manifests)
        kinds.update(r.resource_id.kind for r in self._current_status().resources)
        return kinds

    async def _diff(self, app: Application, revision: str, desired: Desired) -> _Comparison:
        """Compare desired documents against live state."""
        with trace_context("Compare"):
            live = await self._observe(list(desired))
            managed = await self._managed(app, self._known_kinds(desired))
            result = compare(desired, live, managed)
        resources = []
        health = []
        for diff in result.diffs:
            resource_health = assess_health(diff.live)
            resources.append(
                ResourceStatus(
                    resource_id=diff.resource_id,
                    sync_status=diff.sync_status,
                    health=resource_health,
                    requires_pruning=diff.action == DiffAction.PRUNE,
                )
            )
            if diff.action != DiffAction.PRUNE:
                health.append(resource_health)
        return _Comparison(
            revision=revision,
            desired=desired,
            result=result,
            resources=resources,
            health=aggregate_health(health),
            conditions=self._drift_conditions(revision, desired, result),
        )

    def _drift_conditions(
        self, revision: str, desired: Desired, result: DiffResult
    ) -> list[Condition]:
        """Report resources changed in the cluster since they were last synced."""
        synced = self._store.get_artifact(self._resource_id, SyncedArtifact)
        if synced is None or synced.revision != revision:
            return []
        synced_docs = {
            resource_id_for(doc, None): doc for doc in synced.manifests
        }
        drifted = [
            str(diff.resource_id)
            for diff in result.diffs
            if diff.action in (DiffAction.CREATE, DiffAction.UPDATE)
            and synced_docs.get(diff.resource_id) == desired.get(diff.resource_id)
        ]
        if not drifted:
            return []
        return [Condition.from_exception(DriftError(drifted))]

    async def compare(self) -> DiffResult:
        """Compare the desired state against the cluster without publishing status.

        Raises:
            FetchError: If the source could not be fetched.
            ValidationError: If the desired documents are invalid.
            ApplyError: If the cluster could not be read.
        """
        app = self._application()
        artifact = await self._fetch(app, hard=False)
        desired = self._desired(app, artifact.manifests)
        comparison = await self._diff(app, artifact.revision, desired)
        return comparison.result

    async def _compare_and_sync(
        self, hard: bool, initiator: Initiator | None
    ) -> float | None:
        app = self._application()
        previous = self._current_status()
        self._publish(phase=ApplicationPhase.COMPARING)

        try:
            artifact = await self._fetch(app, hard)
            desired = self._desired(app, artifact.manifests)
        except FetchError as err:
            self._fetch_failures += 1
            delay = app.sync_policy.retry.backoff.delay(self._fetch_failures)
            _LOGGER.warning(
                "Failed to fetch desired state for %s (retry in %.1fs): %s",
                self._resource_id.namespaced_name,
                delay,
                err,
            )
            self._publish(
                phase=previous.phase,
                conditions=[Condition.from_exception(err)],
            )
            return delay
        except ValidationError as err:
            self._fetch_failures = 0
            _LOGGER.error(
                "Invalid desired state for %s: %s", self._resource_id.namespaced_name, err
            )
            self._publish(
                phase=ApplicationPhase.UNKNOWN,
                sync_status=SyncStatus.UNKNOWN,
                health_status=HealthStatus.MISSING,
                revision=self._revision_of(app),
                resources=[],
                conditions=[Condition.from_exception(err)],
            )
            return None
        self._fetch_failures = 0

        try:
            comparison = await self._diff(app, artifact.revision, desired)
        except ApplyError as err:
            delay = app.sync_policy.retry.backoff.delay(1)
            _LOGGER.warning(
                "Failed to read live state for %s: %s", self._resource_id.namespaced_name, err
            )
            self._publish(
                phase=previous.phase,
                revision=artifact.revision,
                conditions=[Condition.from_exception(err)],
            )
            return delay

        sync_status = comparison.result.sync_status
        phase = (
            ApplicationPhase.SYNCED
            if sync_status == SyncStatus.SYNCED
            else ApplicationPhase.OUT_OF_SYNC
        )
        conditions = list(comparison.conditions)
        if initiator is None and sync_status == SyncStatus.OUT_OF_SYNC:
            if app.sync_policy.automated:
                initiator, skip = self._automated_sync_check(app, comparison)
                if skip is not None:
                    conditions.append(skip)
        _LOGGER.info(
            "Application %s at %s is %s",
            self._resource_id.namespaced_name,
            artifact.revision,
            sync_status,
        )
        self._publish(
            phase=phase,
            sync_status=sync_status,
            health_status=comparison.health,
            revision=artifact.revision,
            resources=comparison.resources,
            conditions=conditions,
        )
        if initiator is not None:
            await self._sync(app, comparison, initiator)
        return None

    def _revision_of(self, app: Application) -> str | None:
        if artifact := self._store.get_artifact(self._resource_id, SourceArtifact):
            return artifact.revision
        return None

    def _automated_sync_check(
        self, app: Application, comparison: _Comparison
    ) -> tuple[Initiator | None, Condition | None]:
        """Decide whether an out of sync Application is synced automatically.

        A revision is synced automatically once. A failed automated sync is
        not repeated for the same revision unless self heal is enabled.
        Returns the initiator of the sync, or a condition explaining the skip.
        """
        plan = build_plan(comparison.result, prune=app.sync_policy.prune)
        if not plan.applies and not plan.prunes:
            _LOGGER.info(
                "Skipping automated sync of %s: only pruning is needed and prune is disabled",
                self._resource_id.namespaced_name,
            )
            return None, None
        history = self._store.get_history(self._resource_id)
        if history and history[-1].revision == comparison.revision:
            last = history[-1]
            if last.phase != OperationPhase.SUCCEEDED and not app.sync_policy.self_heal:
                message = (
                    f"Skipping automated sync to {comparison.revision}: "
                    f"previous sync failed: {last.message}"
                )
                _LOGGER.warning(message)
                return None, Condition(type=ConditionType.SYNC_ERROR, message=message)
            if last.phase == OperationPhase.SUCCEEDED and not app.sync_policy.self_heal:
                _LOGGER.info(
                    "Skipping automated sync of %s: already synced to %s",
                    self._resource_id.namespaced_name,
                    comparison.revision,
                )
                return None, None
        return Initiator.AUTOMATED, None

    async def _check_drift(self) -> None:
        """Compare live state against the desired state of the last sync."""
        synced = self._store.get_artifact(self._resource_id, SyncedArtifact)
        status = self._current_status()
        if synced is None or status.phase in (
            ApplicationPhase.UNKNOWN,
            ApplicationPhase.COMPARING,
            ApplicationPhase.SYNCING,
        ):
            return
        if status.revision != synced.revision:
            # A rollout to a newer revision did not complete, the next poll retries it
            _LOGGER.debug(
                "Skipping drift check of %s: last sync was %s, declared revision is %s",
                self._resource_id.namespaced_name,
                synced.revision,
                status.revision,
            )
            return
        app = self._application()
        desired = {resource_id_for(doc, None): doc for doc in synced.manifests}
        with trace_context("Drift check"):
            try:
                live = await self._observe(list(desired))
            except ApplyError as err:
                _LOGGER.warning(
                    "Drift check failed for %s: %s", self._resource_id.namespaced_name, err
                )
                return
        drifted = [
            str(rid)
            for rid, doc in desired.items()
            if live.get(rid) is None or not matches(doc, live[rid])
        ]
        if not drifted:
            return
        _LOGGER.info(
            "Application %s drifted from the last sync: %s",
            self._resource_id.namespaced_name,
            drifted,
        )
        condition = Condition.from_exception(DriftError(drifted))
        if not app.sync_policy.self_heal:
            if status.phase == ApplicationPhase.OUT_OF_SYNC and condition in status.conditions:
                return
            self._publish(phase=ApplicationPhase.COMPARING)
            try:
                comparison = await self._diff(app, synced.revision, desired)
            except ApplyError as err:
                self._publish(phase=status.phase, conditions=[Condition.from_exception(err)])
                return
            self._publish(
                phase=ApplicationPhase.OUT_OF_SYNC,
                sync_status=SyncStatus.OUT_OF_SYNC,
                health_status=comparison.health,
                resources=comparison.resources,
                conditions=[condition],
            )
            return
        try:
            comparison = await self._diff(app, synced.revision, desired)
        except ApplyError as err:
            _LOGGER.warning(
                "Self heal failed for %s: %s", self._resource_id.namespaced_name, err
            )
            return
        comparison.conditions = [condition]
        await self._sync(app, comparison, Initiator.SELF_HEAL)

    async def _call(self, resource_id: NamedResource, call: Awaitable[T]) -> T:
        """Run a cluster call bounded by the apply timeout."""
        try:
            async with asyncio.timeout(self._config.apply_timeout):
                return await call
        except TimeoutError as err:
            raise ApplyError(
                str(resource_id),
                f"timed out after {self._config.apply_timeout}s",
                transient=True,
            ) from err

    async def _with_retry(
        self,
        app: Application,
        resource_id: NamedResource,
        call: Callable[[], Awaitable[Any]],
    ) -> tuple[int, ApplyError | None]:
        """Run a cluster call, retrying transient failures with backoff.

        Returns the number of attempts made and the final error, if any.
        """
        retry = app.sync_policy.retry
        attempts = 0
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(retry.limit),
                wait=wait_exponential(
                    multiplier=retry.backoff.duration,
                    exp_base=retry.backoff.factor,
                    max=retry.backoff.max_duration,
                ),
                retry=retry_if_exception(_is_transient),
                sleep=self._config.sleep,
                reraise=True,
            ):
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    if attempts > 1:
                        _LOGGER.debug("Retrying %s (attempt %d)", resource_id, attempts)
                    await self._call(resource_id, call())
        except ApplyError as err:
            _LOGGER.warning(
                "Giving up on %s after %d attempt(s): %s", resource_id, attempts, err
            )
            return attempts, err
        return attempts, None

    async def _apply(
        self,
        app: Application,
        diff: ResourceDiff,
        results: dict[NamedResource, ResourceResult],
    ) -> bool:
        doc = diff.desired or {}
        attempts, err = await self._with_retry(
            app, diff.resource_id, lambda: self._cluster.apply(doc)
        )
        if err is not None:
            results[diff.resource_id] = ResourceResult(
                diff.resource_id, ResultCode.SYNC_FAILED, attempts, err.message
            )
            return False
        verb = "created" if diff.action == DiffAction.CREATE else "configured"
        results[diff.resource_id] = ResourceResult(
            diff.resource_id, ResultCode.SYNCED, attempts, f"{diff.resource_id.kind} {verb}"
        )
        return True

    async def _prune(
        self,
        app: Application,
        plan: SyncPlan,
        results: dict[NamedResource, ResourceResult],
    ) -> bool:
        with trace_context("Prune"):
            for diff in plan.prunes:
                attempts, err = await self._with_retry(
                    app, diff.resource_id, lambda: self._cluster.delete(diff.resource_id)
                )
                if err is not None:
                    results[diff.resource_id] = ResourceResult(
                        diff.resource_id, ResultCode.SYNC_FAILED, attempts, err.message
                    )
                    return False
                results[diff.resource_id] = ResourceResult(
                    diff.resource_id, ResultCode.PRUNED, attempts, "pruned"
                )
        return True

    async def _wait_healthy(self, resource_ids: list[NamedResource]) -> HealthStatus:
        """Poll the health of resources until settled or the grace period ends."""
        checks = max(
            1, math.ceil(self._config.health_grace_period / self._config.health_check_interval)
        )
        health = HealthStatus.MISSING
        with trace_context("Health"):
            for check in range(checks + 1):
                live = await self._observe(resource_ids)
                health = aggregate_health([assess_health(live[rid]) for rid in resource_ids])
                if health in SETTLED_HEALTH or health == HealthStatus.DEGRADED:
                    break
                if check < checks:
                    await self._config.sleep(self._config.health_check_interval)
        return health

    async def _execute(
        self,
        app: Application,
        plan: SyncPlan,
        resource_ids: list[NamedResource],
        results: dict[NamedResource, ResourceResult],
    ) -> tuple[bool, HealthStatus]:
        """Apply a sync plan, returning whether every call succeeded and the health."""
        if plan.create_namespace:
            namespace_id = NamedResource(NAMESPACE_KIND, None, plan.create_namespace)
            if await self._cluster.get(namespace_id) is None:
                doc = {
                    "apiVersion": "v1",
                    "kind": NAMESPACE_KIND,
                    "metadata": {"name": plan.create_namespace},
                }
                diff = ResourceDiff(namespace_id, DiffAction.CREATE, doc, None)
                if not await self._apply(app, diff, results):
                    return False, HealthStatus.MISSING

        sem = asyncio.Semaphore(self._config.apply_concurrency)

        async def apply(diff: ResourceDiff) -> bool:
            async with sem:
                return await self._apply(app, diff, results)

        for step in plan.steps:
            with trace_context(f"Wave {step.wave} {step.kind}"):
                succeeded = await asyncio.gather(*(apply(d) for d in step.diffs))
            if not all(succeeded):
                return False, HealthStatus.MISSING

        prune_last = app.sync_policy.sync_options.prune_last
        if not prune_last and not await self._prune(app, plan, results):
            return False, HealthStatus.MISSING
        health = await self._wait_healthy(resource_ids)
        if prune_last and health in SETTLED_HEALTH:
            if not await self._prune(app, plan, results):
                return False, health
        return True, health

    async def _sync(
        self, app: Application, comparison: _Comparison, initiator: Initiator
    ) -> None:
        """Apply the out of sync resources of a comparison."""
        started_at = utcnow()
        revision = comparison.revision
        _LOGGER.info(
            "Syncing %s to %s (%s)", self._resource_id.namespaced_name, revision, initiator
        )
        self._publish(
            phase=ApplicationPhase.SYNCING,
            operation=OperationState(
                initiated_by=initiator,
                phase=OperationPhase.RUNNING,
                revision=revision,
                started_at=started_at,
            ),
        )
        create_namespace = None
        if app.sync_policy.sync_options.create_namespace:
            create_namespace = app.destination.namespace
        plan = build_plan(comparison.result, app.sync_policy.prune, create_namespace)
        resource_ids = list(comparison.desired)
        results: dict[NamedResource, ResourceResult] = {}
        for diff in plan.skipped_prunes:
            results[diff.resource_id] = ResourceResult(
                diff.resource_id, ResultCode.PRUNE_SKIPPED, 0, "ignored (requires pruning)"
            )

        conditions: list[Condition] = []
        op_phase = OperationPhase.SUCCEEDED
        health = comparison.health
        message: str | None = None
        with trace_context("Sync"):
            try:
                async with asyncio.timeout(self._config.sync_timeout):
                    succeeded, health = await self._execute(
                        app, plan, resource_ids, results
                    )
            except TimeoutError:
                op_phase = OperationPhase.TIMEOUT
                message = f"Sync timed out after {self._config.sync_timeout}s"
                succeeded = False
            except ApplyError as err:
                op_phase = OperationPhase.FAILED
                message = str(err)
                conditions.append(Condition.from_exception(err))
                succeeded = False

        for diff in plan.applies + plan.prunes:
            results.setdefault(
                diff.resource_id,
                ResourceResult(diff.resource_id, ResultCode.PENDING, 0, "not attempted"),
            )
        failed = [r for r in results.values() if r.code == ResultCode.SYNC_FAILED]
        for result in failed:
            conditions.append(
                Condition(
                    type=ConditionType.APPLY_ERROR,
                    message=f"{result.resource_id}: {result.message}",
                )
            )

        # Drift is measured against the desired state once every apply landed
        applied = op_phase != OperationPhase.TIMEOUT and all(
            results[d.resource_id].code == ResultCode.SYNCED for d in plan.applies
        )
        if applied:
            self._store.set_artifact(
                self._resource_id,
                SyncedArtifact(revision=revision, manifests=list(comparison.desired.values())),
            )

        post: _Comparison | None = None
        if op_phase != OperationPhase.TIMEOUT:
            try:
                post = await self._diff(app, revision, comparison.desired)
            except ApplyError as err:
                conditions.append(Condition.from_exception(err))
                succeeded = False
                op_phase = OperationPhase.FAILED
                message = message or str(err)

        if op_phase == OperationPhase.SUCCEEDED and not succeeded:
            op_phase = OperationPhase.FAILED
            message = f"{len(failed)} resource(s) failed to sync"
        if op_phase == OperationPhase.SUCCEEDED and health not in SETTLED_HEALTH:
            op_phase = OperationPhase.FAILED
            if health == HealthStatus.DEGRADED:
                message = "One or more resources are Degraded"
            else:
                message = (
                    f"Resources still {health} after {self._config.health_grace_period}s"
                )

        if op_phase != OperationPhase.SUCCEEDED or post is None:
            phase = ApplicationPhase.DEGRADED
        elif post.result.sync_status == SyncStatus.SYNCED:
            phase = ApplicationPhase.SYNCED
            message = message or "Successfully synced"
        else:
            phase = ApplicationPhase.OUT_OF_SYNC
            if plan.skipped_prunes:
                message = f"{len(plan.skipped_prunes)} resource(s) require pruning"
            else:
                message = "Synced, but live state still differs"

        finished_at = utcnow()
        _LOGGER.info(
            "Sync of %s finished: %s (%s)", self._resource_id.namespaced_name, op_phase, message
        )
        operation = OperationState(
            initiated_by=initiator,
            phase=op_phase,
            revision=revision,
            started_at=started_at,
            finished_at=finished_at,
            message=message,
            results=list(results.values()),
        )
        self._publish(
            phase=phase,
            sync_status=post.result.sync_status if post else SyncStatus.UNKNOWN,
            health_status=post.health if post else health,
            revision=revision,
            resources=post.resources if post else comparison.resources,
            conditions=(post.conditions if post else comparison.conditions) + conditions,
            operation=operation,
        )
        self._add_history(operation)

    async def sync(self) -> ApplicationStatus:
        """Compare and then sync the Application, returning the final status."""
        await self.reconcile(frozenset({SYNC}))
        return self._current_status()

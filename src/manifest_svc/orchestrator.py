"""
Reconciliation cycle orchestrator.

One cycle runs a fixed sequence of steps. Work inside a step may fan out in
parallel, but steps run one after another and cycles never overlap: the
runner owns an explicit idle/running state that is checked and set before the
first await of a cycle.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from opentelemetry import trace
from sqlalchemy.exc import SQLAlchemyError

from hub_common.exceptions import ManifestServiceError, NetworkFailure
from hub_common.http_client import HttpClient
from hub_common.infrastructure import (
    CycleRunRepository,
    DatabaseManager,
    ManifestRepository,
    ParticipantRepository,
)
from hub_common.logging_config import cycle_context, step_context

from .codec import ENCODING_BASE64, EncodedManifest
from .config import SOURCE_KIND_RPC, ManifestServiceConfig
from .domain_verification import DomainVerifier
from .ingestion import ManifestIngestor
from .lifecycle import DEFAULT_RETENTION, LifecycleManager, ManualDomainFallback
from .membership import MembershipReconciler
from .metrics import CycleMetrics
from .models import CycleReport, JobStatus, StepResult, StepStatus, TrustedListSnapshot
from .reconciliation import RevocationReconciler
from .rpc import NodeRpcClient
from .trusted_lists import HttpListSource, RpcListSource, TrustedListSource

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

REFRESH_SOURCE = "rpc-refresh"

STEP_FETCH_LISTS = "fetch_lists"
STEP_REFRESH_MANIFESTS = "refresh_manifests"
STEP_PROPAGATE = "propagate"
STEP_MEMBERSHIP = "membership"
STEP_REVOKE_MANIFESTS = "revoke_manifests"
STEP_REVOKE_PARTICIPANTS = "revoke_participants"
STEP_PURGE_STALE = "purge_stale"
STEP_PURGE_REVOKED = "purge_revoked"
STEP_MANUAL_FALLBACK = "manual_fallback"


class CycleState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"


@dataclass
class CycleContext:
    """State handed from one step of a cycle to the next."""

    now: datetime
    memberships: dict[str, list[str]] = field(default_factory=dict)


class ManifestCycleRunner:
    """Runs reconciliation cycles over the manifest store."""

    def __init__(
        self,
        database: DatabaseManager,
        ingestor: ManifestIngestor,
        sources: Sequence[TrustedListSource] = (),
        *,
        rpc_client: Optional[NodeRpcClient] = None,
        manual_domains: Optional[Mapping[str, str]] = None,
        retention: timedelta = DEFAULT_RETENTION,
        metrics: Optional[CycleMetrics] = None,
        max_concurrency: int = 16,
    ) -> None:
        self.database = database
        self.ingestor = ingestor
        self.sources = list(sources)
        self.rpc_client = rpc_client
        self.manual_domains = dict(manual_domains or {})
        self.metrics = metrics
        self.max_concurrency = max_concurrency

        self.reconciler = RevocationReconciler(database)
        self.membership = MembershipReconciler(database)
        self.lifecycle = LifecycleManager(database, retention)
        self.fallback = ManualDomainFallback(database)

        self.state = CycleState.IDLE
        self._stop = asyncio.Event()

    @property
    def running(self) -> bool:
        return self.state is CycleState.RUNNING

    async def run_cycle(self, now: Optional[datetime] = None) -> Optional[CycleReport]:
        """
        Run one full cycle.

        Returns:
            The cycle report, or None if a cycle was already running
        """
        if self.state is CycleState.RUNNING:
            logger.warning("Reconciliation cycle already running, skipping this tick")
            return None
        self.state = CycleState.RUNNING
        try:
            return await self._run(now or datetime.now(timezone.utc))
        finally:
            self.state = CycleState.IDLE

    async def _run(self, now: datetime) -> CycleReport:
        context = CycleContext(now=now)
        report = CycleReport(started_at=datetime.now(timezone.utc))
        report.run_id = await self._start_run()
        if self.metrics:
            self.metrics.cycle_started()
        logger.info(f"Starting reconciliation cycle {report.run_id}")

        steps: list[tuple[str, Callable[[CycleContext], Awaitable[StepResult]]]] = [
            (STEP_FETCH_LISTS, self.fetch_lists),
            (STEP_REFRESH_MANIFESTS, self.refresh_manifests),
            (STEP_PROPAGATE, self.propagate),
            (STEP_MEMBERSHIP, self.reconcile_membership),
            (STEP_REVOKE_MANIFESTS, self.revoke_manifests),
            (STEP_REVOKE_PARTICIPANTS, self.revoke_participants),
            (STEP_PURGE_STALE, self.purge_stale),
            (STEP_PURGE_REVOKED, self.purge_revoked),
            (STEP_MANUAL_FALLBACK, self.apply_manual_fallback),
        ]
        with cycle_context(report.run_id or "-"), tracer.start_as_current_span("manifest_cycle"):
            for name, action in steps:
                report.steps.append(await self._run_step(name, action, context))

        failed_steps = [step for step in report.steps if step.status is StepStatus.FAILED]
        if not failed_steps:
            report.status = JobStatus.COMPLETED
        elif len(failed_steps) == len(report.steps):
            report.status = JobStatus.FAILED
        else:
            report.status = JobStatus.PARTIAL
        report.completed_at = datetime.now(timezone.utc)

        await self._complete_run(report)
        await self._update_store_metrics()
        if self.metrics:
            self.metrics.cycle_finished(report.status.value)

        logger.info(
            f"Reconciliation cycle {report.run_id} {report.status.value}: "
            f"{report.records_processed} records, {report.errors_count} errors"
        )
        return report

    async def _run_step(
        self,
        name: str,
        action: Callable[[CycleContext], Awaitable[StepResult]],
        context: CycleContext,
    ) -> StepResult:
        started = time.perf_counter()
        with step_context(name), tracer.start_as_current_span(f"manifest_cycle.{name}") as span:
            try:
                result = await action(context)
            except Exception as e:  # pylint: disable=broad-except
                logger.exception(f"Cycle step {name} failed")
                span.record_exception(e)
                result = StepResult(name=name, status=StepStatus.FAILED, error=str(e))
            span.set_attribute("manifest.step.status", result.status.value)
        result.name = name
        result.duration_seconds = time.perf_counter() - started
        if self.metrics:
            self.metrics.record_step(
                name, result.duration_seconds, result.processed, result.failed, result.status.value
            )
        return result

    # Steps

    async def fetch_lists(self, context: CycleContext) -> StepResult:
        """Fetch every trusted list and ingest the manifests it carries."""
        if not self.sources:
            return StepResult(name=STEP_FETCH_LISTS, status=StepStatus.SKIPPED)

        results = await asyncio.gather(
            *(source.fetch(now=context.now) for source in self.sources), return_exceptions=True
        )
        result = StepResult(name=STEP_FETCH_LISTS)
        failed_sources: dict[str, str] = {}
        for source, outcome in zip(self.sources, results):
            if isinstance(outcome, ManifestServiceError):
                logger.warning(f"Trusted list {source.name} unavailable: {outcome.message}")
                failed_sources[source.name] = outcome.message
                continue
            if isinstance(outcome, Exception):
                logger.error(
                    f"Trusted list {source.name} failed unexpectedly: {outcome!r}",
                    exc_info=(type(outcome), outcome, outcome.__traceback__),
                )
                failed_sources[source.name] = f"{type(outcome).__name__}: {outcome}"
                continue
            if isinstance(outcome, BaseException):
                raise outcome
            snapshot: TrustedListSnapshot = outcome
            report = await self.ingestor.ingest_many(
                (EncodedManifest(entry.manifest, ENCODING_BASE64) for entry in snapshot.entries),
                source.name,
                seen_at=context.now,
            )
            context.memberships[source.name] = list(snapshot.signing_keys)
            result.processed += report.processed
            result.failed += report.failed
            result.details[source.name] = {
                "sequence": snapshot.sequence,
                "entries": len(snapshot.entries),
                "ingested": report.ingested,
                "unchanged": report.unchanged,
                "failed": report.failed,
            }

        result.failed += len(failed_sources)
        if failed_sources:
            result.details["failed_sources"] = sorted(failed_sources)
        if len(failed_sources) == len(self.sources):
            result.status = StepStatus.FAILED
            result.error = "No trusted list could be fetched: " + "; ".join(
                f"{name} ({reason})" for name, reason in failed_sources.items()
            )
        return result

    async def refresh_manifests(self, context: CycleContext) -> StepResult:
        """Look up the newest manifest for every known signing key on the node."""
        if self.rpc_client is None:
            return StepResult(name=STEP_REFRESH_MANIFESTS, status=StepStatus.SKIPPED)

        async with self.database.session_scope() as session:
            keys = await ParticipantRepository(session).list_signing_keys()

        semaphore = asyncio.Semaphore(self.max_concurrency)
        lookup_failures = 0

        async def lookup(key: str) -> Optional[str]:
            nonlocal lookup_failures
            async with semaphore:
                try:
                    return await self.rpc_client.fetch_manifest(key)
                except NetworkFailure as e:
                    lookup_failures += 1
                    logger.warning(
                        f"Manifest refresh failed: source={REFRESH_SOURCE} key={key} reason={e.message}"
                    )
                    return None
                except Exception:  # pylint: disable=broad-except
                    lookup_failures += 1
                    logger.exception(f"Manifest refresh failed: source={REFRESH_SOURCE} key={key}")
                    return None

        manifests = await asyncio.gather(*(lookup(key) for key in keys))
        report = await self.ingestor.ingest_many(
            (EncodedManifest(manifest, ENCODING_BASE64) for manifest in manifests if manifest),
            REFRESH_SOURCE,
            seen_at=context.now,
        )
        return StepResult(
            name=STEP_REFRESH_MANIFESTS,
            processed=report.processed,
            failed=report.failed + lookup_failures,
            details={"keys": len(keys), "ingested": report.ingested},
        )

    async def propagate(self, context: CycleContext) -> StepResult:
        report = await self.reconciler.propagate()
        return StepResult(name=STEP_PROPAGATE, processed=report.updated)

    async def reconcile_membership(self, context: CycleContext) -> StepResult:
        if not context.memberships:
            return StepResult(name=STEP_MEMBERSHIP, status=StepStatus.SKIPPED)
        counts = await self.membership.reconcile(context.memberships)
        return StepResult(
            name=STEP_MEMBERSHIP,
            processed=sum(c["tagged"] + c["cleared"] for c in counts.values()),
            details=counts,
        )

    async def revoke_manifests(self, context: CycleContext) -> StepResult:
        report = await self.reconciler.revoke_manifests()
        return StepResult(
            name=STEP_REVOKE_MANIFESTS,
            processed=report.revoked + report.reinstated,
            details={
                "authoritative": report.authoritative,
                "revoked": report.revoked,
                "reinstated": report.reinstated,
                "anomalies": [anomaly.message for anomaly in report.anomalies],
            },
        )

    async def revoke_participants(self, context: CycleContext) -> StepResult:
        report = await self.reconciler.revoke_participants()
        return StepResult(
            name=STEP_REVOKE_PARTICIPANTS,
            processed=report.updated,
            details={"superseded": report.superseded},
        )

    async def purge_stale(self, context: CycleContext) -> StepResult:
        deleted = await self.lifecycle.purge_stale(context.now)
        return StepResult(name=STEP_PURGE_STALE, processed=deleted)

    async def purge_revoked(self, context: CycleContext) -> StepResult:
        deleted = await self.lifecycle.purge_revoked()
        return StepResult(name=STEP_PURGE_REVOKED, processed=deleted)

    async def apply_manual_fallback(self, context: CycleContext) -> StepResult:
        if not self.manual_domains:
            return StepResult(name=STEP_MANUAL_FALLBACK, status=StepStatus.SKIPPED)
        result = await self.fallback.apply(self.manual_domains)
        return StepResult(
            name=STEP_MANUAL_FALLBACK,
            processed=result.applied,
            failed=result.failed,
            details=result.model_dump(),
        )

    # Bookkeeping

    async def _start_run(self) -> Optional[int]:
        try:
            async with self.database.session_scope() as session:
                record = await CycleRunRepository(session).start(
                    {"sources": [source.name for source in self.sources]}
                )
                return record.id
        except SQLAlchemyError:
            logger.exception("Failed to record cycle start")
            return None

    async def _complete_run(self, report: CycleReport) -> None:
        if report.run_id is None:
            return
        try:
            async with self.database.session_scope() as session:
                await CycleRunRepository(session).complete(
                    report.run_id,
                    report.status.value,
                    records_processed=report.records_processed,
                    errors_count=report.errors_count,
                    details={"steps": [step.model_dump(mode="json") for step in report.steps]},
                )
        except SQLAlchemyError:
            logger.exception(f"Failed to record completion of cycle {report.run_id}")

    async def _update_store_metrics(self) -> None:
        if self.metrics is None:
            return
        try:
            async with self.database.session_scope() as session:
                self.metrics.set_store_counts(
                    "manifests", await ManifestRepository(session).count_by_state()
                )
                self.metrics.set_store_counts(
                    "participants", await ParticipantRepository(session).count_by_state()
                )
        except SQLAlchemyError:
            logger.exception("Failed to update store metrics")

    # Scheduling

    def stop(self) -> None:
        self._stop.set()

    async def run_forever(self, interval: float = 300.0) -> None:
        """Run a cycle every ``interval`` seconds until :meth:`stop` is called."""
        loop = asyncio.get_running_loop()
        logger.info(f"Reconciliation loop started, interval {interval}s")
        while not self._stop.is_set():
            next_tick = loop.time() + interval
            await self.run_cycle()
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=max(0.0, next_tick - loop.time()))
            except asyncio.TimeoutError:
                continue
        logger.info("Reconciliation loop stopped")


def build_cycle_runner(
    config: ManifestServiceConfig,
    database: DatabaseManager,
    http_client: HttpClient,
    metrics: Optional[CycleMetrics] = None,
) -> ManifestCycleRunner:
    """Wire the runner and its sources from configuration."""
    network = config.network
    rpc_client = (
        NodeRpcClient(network.node_rpc_url, http_client) if network.node_rpc_url else None
    )

    sources: list[TrustedListSource] = []
    for source in network.sources:
        if source.kind == SOURCE_KIND_RPC:
            sources.append(RpcListSource(source.name, rpc_client, network.max_concurrency))
        else:
            sources.append(
                HttpListSource(source.name, source.url, http_client, source.publisher_key)
            )

    verifier = DomainVerifier(http_client.get_text, network.trust_file_path)
    ingestor = ManifestIngestor(database, verifier, network.max_concurrency)
    return ManifestCycleRunner(
        database,
        ingestor,
        sources,
        rpc_client=rpc_client,
        manual_domains=config.lifecycle.load_manual_domains(),
        retention=timedelta(days=config.lifecycle.retention_days),
        metrics=metrics,
        max_concurrency=network.max_concurrency,
    )

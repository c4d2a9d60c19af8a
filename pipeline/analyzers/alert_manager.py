"""
Alert Manager: reconciles analysis snapshots into alerts.

Alerts are keyed by fingerprint ("<alertType>:<entityId>"), at most one
active row per fingerprint. For each analysis event:
- a finding without an alert creates one
- a finding with an alert refreshes it (and reopens it if resolved)
- an active alert in scope without a finding is resolved

Two reconciles racing on one fingerprint meet at the unique index on
active rows: the loser refreshes the row the winner created.

Scope is every alert of the event's alert types for the data source, or
only the analyzed entities when the analysis was incremental. Entity
state is then recomputed from the entity's remaining active alerts.
"""

from typing import Any, Dict, List, Set, Tuple
import logging

from core.exceptions import StorageError
from models.base import AlertSeverity, AlertStatus, EntityState, new_id
from pipeline.stage import PipelineStage
from schemas.events import AnalysisEvent, Finding
from schemas.records import AlertRecord
from storage.base import Table, chunked

logger = logging.getLogger(__name__)

ID_CHUNK = 1000

SEVERITY_STATE = {
    AlertSeverity.CRITICAL.value: EntityState.CRITICAL.value,
    AlertSeverity.HIGH.value: EntityState.CRITICAL.value,
    AlertSeverity.MEDIUM.value: EntityState.WARN.value,
    AlertSeverity.LOW.value: EntityState.LOW.value,
}

STATE_RANK = {
    EntityState.NORMAL.value: 0,
    EntityState.LOW.value: 1,
    EntityState.WARN.value: 2,
    EntityState.CRITICAL.value: 3,
}


def entity_state(alerts: List[AlertRecord]) -> str:
    """Worst state implied by a set of active alerts."""
    state = EntityState.NORMAL.value
    for alert in alerts:
        candidate = SEVERITY_STATE.get(alert.severity, EntityState.NORMAL.value)
        if STATE_RANK[candidate] > STATE_RANK[state]:
            state = candidate
    return state


class AlertManager(PipelineStage):
    stage_name = "alert_manager"
    event_cls = AnalysisEvent
    # alerting is a side channel: never send the page back for re-fetch
    fails_job_on_error = False

    def topics(self) -> List[str]:
        return ["analysis.>"]

    async def handle(self, event: AnalysisEvent) -> None:
        created, refreshed, resolved, touched = await self.reconcile(event)
        states = await self.update_entity_states(event, touched)
        logger.info(
            f"Alerts for {event.analysis_type} on {event.data_source_id}: {created} created, "
            f"{refreshed} refreshed, {resolved} resolved, {states} entity states changed"
        )

    async def reconcile(self, event: AnalysisEvent) -> Tuple[int, int, int, Set[str]]:
        now = self.context.now()
        alert_types = list(event.alert_types) or sorted({f.alert_type for f in event.findings})
        if not alert_types:
            return 0, 0, 0, set()

        existing = await self.store.query(
            Table.ALERTS,
            {"data_source_id": event.data_source_id, "alert_type": ("in", alert_types)},
            tenant_id=event.tenant_id,
        )
        active: Dict[str, List[AlertRecord]] = {}
        resolved: Dict[str, AlertRecord] = {}
        for alert in existing:
            if alert.status == AlertStatus.ACTIVE.value:
                active.setdefault(alert.fingerprint, []).append(alert)
            else:
                resolved.setdefault(alert.fingerprint, alert)
        for alerts in active.values():
            alerts.sort(key=lambda alert: alert.created_at or now)

        findings: Dict[str, Finding] = {}
        for finding in event.findings:
            findings.setdefault(finding.fingerprint, finding)

        creates: List[Dict[str, Any]] = []
        refreshes: List[Tuple[str, Dict[str, Any]]] = []
        reopens: List[Tuple[str, Dict[str, Any], Finding]] = []
        touched: Set[str] = set()

        for fingerprint, finding in findings.items():
            touched.add(finding.entity_id)
            if fingerprint in active:
                refreshes.append((active[fingerprint][0].id, self._refresh_patch(finding, now)))
            elif fingerprint in resolved:
                reopens.append((resolved[fingerprint].id, self._refresh_patch(finding, now), finding))
            else:
                creates.append(self._new_alert(event, finding, now))

        analyzed = set(event.analyzed_entity_ids)
        resolves: List[Tuple[str, Dict[str, Any]]] = []
        for fingerprint, alerts in active.items():
            # a finding keeps the oldest active row; any other active row goes
            stale = alerts[1:] if fingerprint in findings else alerts
            for alert in stale:
                if fingerprint not in findings and event.scope == "incremental" and alert.entity_id not in analyzed:
                    continue
                resolves.append((alert.id, {"status": AlertStatus.RESOLVED.value, "resolved_at": now}))
                touched.add(alert.entity_id)

        if resolves:
            await self.store.update_many(Table.ALERTS, resolves)

        raced: List[Finding] = []
        created_ids: List[str] = []
        if creates:
            created_ids = await self.store.insert(Table.ALERTS, creates, ignore_conflicts=True)
            inserted = set(created_ids)
            # rows skipped on conflict: another reconcile activated the fingerprint first
            raced.extend(findings[row["fingerprint"]] for row in creates if row["id"] not in inserted)
        if refreshes:
            await self.store.update_many(Table.ALERTS, refreshes)
        if reopens:
            try:
                await self.store.update_many(Table.ALERTS, [(alert_id, patch) for alert_id, patch, _ in reopens])
            except StorageError as e:
                logger.info(f"Reopening alerts on {event.data_source_id} lost to a concurrent reconcile: {e}")
                raced.extend(finding for _, _, finding in reopens)
        if raced:
            await self._refresh_active(event, raced, now)

        return len(created_ids), len(refreshes) + len(reopens), len(resolves), touched

    def _new_alert(self, event: AnalysisEvent, finding: Finding, now) -> Dict[str, Any]:
        return {
            "id": new_id(),
            "tenant_id": event.tenant_id,
            "data_source_id": event.data_source_id,
            "entity_id": finding.entity_id,
            "alert_type": finding.alert_type,
            "severity": finding.severity,
            "message": finding.message,
            "fingerprint": finding.fingerprint,
            "extra_metadata": finding.evidence,
            "status": AlertStatus.ACTIVE.value,
            "last_seen_at": now,
        }

    @staticmethod
    def _refresh_patch(finding: Finding, now) -> Dict[str, Any]:
        return {
            "severity": finding.severity,
            "message": finding.message,
            "extra_metadata": finding.evidence,
            "status": AlertStatus.ACTIVE.value,
            "last_seen_at": now,
            "resolved_at": None,
        }

    async def _refresh_active(self, event: AnalysisEvent, findings: List[Finding], now) -> None:
        """Refresh the active rows a concurrent reconcile created for these findings."""
        by_fingerprint = {finding.fingerprint: finding for finding in findings}
        rows = await self.store.query(
            Table.ALERTS,
            {
                "data_source_id": event.data_source_id,
                "fingerprint": ("in", sorted(by_fingerprint)),
                "status": AlertStatus.ACTIVE.value,
            },
            tenant_id=event.tenant_id,
        )
        patches = [(row.id, self._refresh_patch(by_fingerprint[row.fingerprint], now)) for row in rows]
        if patches:
            await self.store.update_many(Table.ALERTS, patches)

    async def update_entity_states(self, event: AnalysisEvent, entity_ids: Set[str]) -> int:
        """Recompute Entity.state for entities whose alerts may have changed."""
        if not entity_ids:
            return 0
        ids = sorted(entity_ids)
        active: Dict[str, List[AlertRecord]] = {}
        current: Dict[str, str] = {}
        for id_chunk in chunked(ids, ID_CHUNK):
            for alert in await self.store.query(
                Table.ALERTS,
                {"entity_id": ("in", list(id_chunk)), "status": AlertStatus.ACTIVE.value},
                tenant_id=event.tenant_id,
            ):
                active.setdefault(alert.entity_id, []).append(alert)
            for entity in await self.store.query(
                Table.ENTITIES, {"id": ("in", list(id_chunk))}, tenant_id=event.tenant_id
            ):
                current[entity.id] = entity.state

        patches = []
        for entity_id, state in current.items():
            wanted = entity_state(active.get(entity_id, []))
            if wanted != state:
                patches.append((entity_id, {"state": wanted}))
        if patches:
            await self.store.update_many(Table.ENTITIES, patches)
        return len(patches)

"""Findings sync engine.

Findings come from static-analysis reports.  Their content never changes
after ingestion; the only thing users edit is the triage flag.  A
reconciliation pass therefore decides between three outcomes:

* one side is empty: copy the other side over;
* the batches differ (their average creation times are more than
  ``BATCH_EPSILON`` apart): the newer batch replaces the older one;
* same batch: merge by id.  A finding missing remotely was deleted by a
  peer and is removed here; for every other finding keep the flag with the
  newer ``flag_timestamp``.

Older databases stored the flag as an icon in front of the message
(``"🔥 SQL injection"``).  ``migrate_legacy_flag`` decodes those once when
findings are read; ``render_message`` puts the icon back for display.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timezone

from pydantic import ValidationError

from ..analysis.report import AnalysisReport, Diagnostic, finding_from_result
from ..anchor import ANCHOR_LINES, decode, resolve_line
from ..core.async_utils import run_sync
from ..errors import MalformedAnchor
from ..file_handler import DocumentSource
from ..store.local import LocalStore
from .coalesce import CoalescingRunner
from .models import FindingFlag, FindingRecord, PassReport
from .remote import RemoteStore

logger = logging.getLogger(__name__)

BATCH_EPSILON = 0.5

FLAG_ICONS = {
    FindingFlag.UNFLAGGED: "🆕",
    FindingFlag.FALSE_POSITIVE: "❌",
    FindingFlag.HOT: "🔥",
    FindingFlag.RESOLVED: "✅",
}
_ICON_FLAGS = {icon: flag for flag, icon in FLAG_ICONS.items()}


def render_message(message: str, flag: FindingFlag) -> str:
    return f"{FLAG_ICONS[flag]} {message}"


def migrate_legacy_flag(finding: FindingRecord) -> FindingRecord:
    """Move a flag icon found in front of the message into ``flag``.

    An explicit non-default ``flag`` wins over the icon.  Findings without
    an icon are returned unchanged.
    """
    try:
        payload = json.loads(finding.diagnostic)
    except ValueError:
        return finding
    if not isinstance(payload, dict):
        return finding
    message = payload.get("message")
    if not isinstance(message, str):
        return finding
    stripped = message.lstrip()
    for icon, flag in _ICON_FLAGS.items():
        if stripped.startswith(icon):
            payload["message"] = stripped[len(icon):].lstrip()
            if finding.flag is FindingFlag.UNFLAGGED:
                new_flag = flag
            else:
                new_flag = finding.flag
            return finding.model_copy(
                update={
                    "diagnostic": json.dumps(payload, ensure_ascii=False),
                    "flag": new_flag,
                }
            )
    return finding


@dataclass
class FindingView:
    """A finding placed on its current line."""

    id: str
    file_path: str
    line: int
    diagnostic: Diagnostic
    flag: FindingFlag

    @property
    def message(self) -> str:
        return render_message(self.diagnostic.message, self.flag)


def _average_created(findings: Iterable[FindingRecord]) -> float:
    values = [f.timestamp_created for f in findings]
    return sum(values) / len(values) if values else 0.0


class FindingSyncEngine:
    """Mirror of one project's analysis findings.

    Args:
        local: Open local store of the project.
        remote: Remote store bound to the project.
        documents: Source of live document text for anchoring.
        clock: Time source for ingestion and flag timestamps.
        anchor_lines: Lines captured on each side of a reported line.
        id_factory: Generates finding ids.
    """

    def __init__(
        self,
        local: LocalStore,
        remote: RemoteStore,
        documents: DocumentSource,
        clock: Callable[[], float] = time.time,
        anchor_lines: int = ANCHOR_LINES,
        id_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
    ) -> None:
        self._local = local
        self._remote = remote
        self._documents = documents
        self._clock = clock
        self._anchor_lines = anchor_lines
        self._new_id = id_factory
        self._disposed = False
        self._unsubscribe: list[Callable[[], None]] = []
        self.runner = CoalescingRunner("findings", self.reconcile)
        self.last_report: PassReport | None = None

    async def start(self) -> None:
        """Migrate legacy flags and follow the remote store."""
        findings = await run_sync(self._local.list_findings)
        migrated = [migrate_legacy_flag(f) for f in findings]
        changed = [m for f, m in zip(findings, migrated) if m != f]
        if changed:
            logger.info("Migrated %d legacy finding flags", len(changed))
            await run_sync(self._local.create_or_replace_findings, changed)
        self._unsubscribe.append(
            self._remote.on_findings_changed(self.request_sync)
        )
        self._unsubscribe.append(self._remote.on_ready(self.request_sync))

    # ------------------------------------------------------------------
    # Local operations
    # ------------------------------------------------------------------

    async def load_report(
        self, report: AnalysisReport, incremental: bool = False
    ) -> list[FindingRecord]:
        """Ingest *report*.

        Args:
            report: Parsed analysis report.
            incremental: Keep existing findings instead of replacing them.

        Returns:
            The findings created.
        """
        created_at = self._clock()
        documents: dict[str, str | None] = {}
        findings: list[FindingRecord] = []
        for result in report.results:
            if result.path not in documents:
                documents[result.path] = await run_sync(
                    self._documents.read_text, result.path
                )
                if documents[result.path] is None:
                    logger.warning(
                        "Finding references a file outside the workspace: %s",
                        result.path,
                    )
            findings.append(
                finding_from_result(
                    result,
                    self._new_id(),
                    documents[result.path],
                    created_at,
                    self._anchor_lines,
                )
            )
        await run_sync(
            self._local.create_or_replace_findings, findings, not incremental
        )
        logger.info("Loaded %d findings", len(findings))
        self.request_sync()
        return findings

    async def list_findings(self) -> list[FindingView]:
        views: list[FindingView] = []
        documents: dict[str, str | None] = {}
        for finding in await run_sync(self._local.list_findings):
            try:
                diagnostic = Diagnostic.model_validate_json(finding.diagnostic)
            except ValidationError as exc:
                logger.error("Finding %s is not readable: %s", finding.id, exc)
                continue
            if finding.file_path not in documents:
                documents[finding.file_path] = await run_sync(
                    self._documents.read_text, finding.file_path
                )
            views.append(
                FindingView(
                    id=finding.id,
                    file_path=finding.file_path,
                    line=self._finding_line(finding, documents[finding.file_path]),
                    diagnostic=diagnostic,
                    flag=finding.flag,
                )
            )
        return views

    async def flag_finding(self, finding_id: str, flag: FindingFlag) -> bool:
        """Set the triage flag of one finding.  Returns ``False`` if unknown."""
        updated = await run_sync(
            self._local.update_finding_flag, finding_id, flag, self._clock()
        )
        if updated:
            self.request_sync()
        return updated

    async def delete_finding(self, finding_id: str) -> None:
        """Remove a finding here and, when connected, remotely."""
        await run_sync(self._local.delete_finding, finding_id)
        if self._remote.is_ready and not self._disposed:
            await self._remote.delete_findings([finding_id])

    async def clear_findings(self) -> None:
        await run_sync(self._local.clear_findings)
        if self._remote.is_ready and not self._disposed:
            await self._remote.delete_findings()

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    def request_sync(self) -> asyncio.Task[None] | None:
        if self._disposed:
            return None
        return self.runner.request()

    async def sync(self) -> None:
        await self.runner.run()

    async def dispose(self) -> None:
        self._disposed = True
        self.runner.dispose()
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe.clear()
        await self.runner.wait_idle()

    async def reconcile(self) -> PassReport:
        started = datetime.now(timezone.utc).isoformat()
        if self._disposed:
            return self._finish(started, skipped="engine disposed")
        if not self._remote.is_ready:
            logger.info("Remote store not ready, skipping findings sync")
            return self._finish(started, skipped="remote not ready")

        local = await run_sync(self._local.list_findings)
        if self._disposed:
            return self._finish(started, skipped="engine disposed")
        remote = [migrate_legacy_flag(f) for f in await self._remote.get_findings()]
        if self._disposed:
            return self._finish(started, skipped="engine disposed")

        if not local and not remote:
            return self._finish(started)
        if not remote:
            await self._remote.push_findings(local, clear_remote=True)
            return self._finish(started, pushed=len(local))
        if not local:
            await run_sync(self._local.create_or_replace_findings, remote, True)
            return self._finish(
                started, pulled=len(remote), created_local=len(remote)
            )

        local_avg = _average_created(local)
        remote_avg = _average_created(remote)
        if remote_avg - local_avg > BATCH_EPSILON:
            logger.debug("Remote findings batch is newer, replacing local")
            await run_sync(self._local.create_or_replace_findings, remote, True)
            return self._finish(
                started, pulled=len(remote), created_local=len(remote)
            )
        if local_avg - remote_avg > BATCH_EPSILON:
            logger.debug("Local findings batch is newer, replacing remote")
            await self._remote.push_findings(local, clear_remote=True)
            return self._finish(started, pushed=len(local))

        return await self._merge(started, local, remote)

    async def _merge(
        self,
        started: str,
        local: list[FindingRecord],
        remote: list[FindingRecord],
    ) -> PassReport:
        local_by_id = {f.id: f for f in local}
        remote_by_id = {f.id: f for f in remote}

        pulled = [f for f in remote if f.id not in local_by_id]
        # Same batch: a finding missing remotely was deleted by a peer.
        removed = [f.id for f in local if f.id not in remote_by_id]
        to_push: list[FindingRecord] = []
        flag_updates: list[FindingRecord] = []
        for finding_id, mine in local_by_id.items():
            theirs = remote_by_id.get(finding_id)
            if theirs is None:
                continue
            if theirs.flag_timestamp > mine.flag_timestamp:
                flag_updates.append(theirs)
            elif mine.flag_timestamp > theirs.flag_timestamp:
                to_push.append(mine)

        if pulled:
            await run_sync(self._local.create_or_replace_findings, pulled)
        if removed:
            logger.debug("Removing %d findings deleted remotely", len(removed))
            await run_sync(self._local.delete_findings, removed)
        for finding in flag_updates:
            await run_sync(
                self._local.update_finding_flag,
                finding.id,
                finding.flag,
                finding.flag_timestamp,
            )
        if to_push and not self._disposed:
            await self._remote.push_findings(to_push, clear_remote=False)
        return self._finish(
            started,
            pulled=len(pulled) + len(flag_updates),
            pushed=len(to_push),
            created_local=len(pulled),
            updated_local=len(flag_updates),
            deleted_local=len(removed),
        )

    def _finish(
        self, started: str, skipped: str | None = None, **counts: int
    ) -> PassReport:
        report = PassReport(
            target="findings",
            started_at=started,
            completed_at=datetime.now(timezone.utc).isoformat(),
            skipped=skipped,
            **counts,
        )
        self.last_report = report
        logger.info(report.summary())
        return report

    def _finding_line(self, finding: FindingRecord, document: str | None) -> int:
        if finding.anchor is None:
            return 0
        try:
            return resolve_line(decode(finding.anchor), document)
        except MalformedAnchor as exc:
            logger.error("Finding %s has a bad anchor: %s", finding.id, exc)
            return 0

"""
Deprovision workflow for one account.

Converts an enterprise account into a standalone personal account:
Activate -> drain -> empty trash -> convert -> notify. Each completed phase is
recorded in the job store so a re-run picks up after the last one.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Iterable, Optional

from box_migrator.constants import ROOT_FOLDER_ID
from box_migrator.core import phases
from box_migrator.core.context import WorkflowContext
from box_migrator.core.digest import report_abort, report_phase_failures
from box_migrator.core.executor import new_correlation_id
from box_migrator.exceptions import (
    DrainLimitExceededError,
    JobStoreError,
    RemoteFault,
    WorkflowAbortedError,
)
from box_migrator.services.box_client import BoxClient
from box_migrator.services.items import item_operations
from box_migrator.services.notifications import notify_account_holder
from box_migrator.types import (
    BoxCollaboration,
    BoxItem,
    DeprovisionRecord,
    DeprovisionTarget,
    ItemKind,
    PhaseFailure,
    PhaseSummary,
    RemovalCandidate,
    RemovalKind,
)
from box_migrator.utils.logging import log_with_context

ROOT_ITEM_FIELDS = "id,type,name,owned_by,is_externally_owned"
SUBFOLDER_FIELDS = "id,type,name,owned_by"


class DeprovisionPhase(IntEnum):
    """Last completed phase of a deprovision run, in execution order."""

    PENDING = 0
    ACTIVATED = 1
    ITEMS_DRAINED = 2
    TRASH_EMPTIED = 3
    CONVERTED = 4
    NOTIFIED = 5


@dataclass
class DeprovisionReport:
    user_id: str
    user_login: str
    resumed_from: DeprovisionPhase
    reached: DeprovisionPhase
    rounds: int = 0
    removed: int = 0
    trash_purged: int = 0
    converted: bool = False
    notified: bool = False
    failures: list[PhaseFailure] = field(default_factory=list)
    duration: float = 0.0


# ---------------------------------------------------------------------------
# Candidate selection
# ---------------------------------------------------------------------------


def _owner_id(entry: BoxItem) -> Optional[str]:
    return (entry.get("owned_by") or {}).get("id")


def partition_candidates(
    entries: Iterable[BoxItem], user_id: str
) -> tuple[list[RemovalCandidate], list[BoxItem]]:
    """Split root-level entries into owned removals and shared items.

    Shared items are owned by someone else inside the enterprise; the
    account's collaboration record on each still has to be looked up.
    Externally owned content is left alone.

    Returns:
        (owned candidates, shared items)
    """
    owned: list[RemovalCandidate] = []
    shared: list[BoxItem] = []
    for entry in entries:
        if entry.get("type") not in (ItemKind.FILE.value, ItemKind.FOLDER.value):
            continue
        if _owner_id(entry) == user_id:
            owned.append(
                RemovalCandidate(
                    target_id=str(entry.get("id")),
                    kind=RemovalKind(entry["type"]),
                    name=entry.get("name", ""),
                )
            )
        elif not entry.get("is_externally_owned", False):
            shared.append(entry)
    owned.sort(key=lambda c: c.name)
    shared.sort(key=lambda e: e.get("name", ""))
    return owned, shared


def collaboration_candidates(
    collaborations: Iterable[BoxCollaboration], item: BoxItem, user_id: str
) -> list[RemovalCandidate]:
    """The account's own collaboration records on ``item``."""
    return [
        RemovalCandidate(
            target_id=str(c.get("id")),
            kind=RemovalKind.COLLABORATION,
            name=item.get("name", ""),
            item_id=str(item.get("id")),
        )
        for c in collaborations
        if (c.get("accessible_by") or {}).get("id") == user_id
    ]


class DeprovisionWorkflow:
    """Runs the deprovision phases for one account.

    Args:
        context: Run context (config, store, clients, notifier, executor)
        target: The account to deprovision
    """

    def __init__(self, context: WorkflowContext, target: DeprovisionTarget) -> None:
        self.context = context
        self.target = target
        self._admin: Optional[BoxClient] = None
        self._user: Optional[BoxClient] = None

    @property
    def admin_client(self) -> BoxClient:
        if self._admin is None:
            self._admin = self.context.clients.admin()
        return self._admin

    @property
    def user_client(self) -> BoxClient:
        if self._user is None:
            self._user = self.context.clients.for_user(self.target.user_id)
        return self._user

    @property
    def _max_attempts(self) -> int:
        return self.context.config.retry.activity_max_attempts

    @property
    def _subject(self) -> dict[str, object]:
        return {"user_id": self.target.user_id, "user_login": self.target.user_login}

    def run(self) -> DeprovisionReport:
        """Run every phase not yet recorded for the account.

        Raises:
            WorkflowAbortedError: When a phase exhausts its retries
            DrainLimitExceededError: When the drain loop never empties
        """
        started = time.time()
        done = DeprovisionPhase(
            self.context.store.fetch_deprovision_phase(self.target.user_id)
        )
        report = DeprovisionReport(
            user_id=self.target.user_id,
            user_login=self.target.user_login,
            resumed_from=done,
            reached=done,
        )
        log_with_context(
            logging.INFO,
            f"Starting deprovision of {self.target.user_login} "
            f"(resuming after {done.name})",
            resume_phase=done.name,
            **self._subject,
        )

        if done < DeprovisionPhase.ACTIVATED:
            cid = self._activate()
            self._record(DeprovisionPhase.ACTIVATED, cid, "status=active")
            report.reached = DeprovisionPhase.ACTIVATED

        if done < DeprovisionPhase.ITEMS_DRAINED:
            cid = new_correlation_id()
            self._drain(report, cid)
            self._record(
                DeprovisionPhase.ITEMS_DRAINED,
                cid,
                f"rounds={report.rounds} removed={report.removed} "
                f"failed={len(report.failures)}",
            )
            report.reached = DeprovisionPhase.ITEMS_DRAINED

        if done < DeprovisionPhase.TRASH_EMPTIED:
            cid = new_correlation_id()
            report.trash_purged = self._empty_trash(cid)
            self._record(
                DeprovisionPhase.TRASH_EMPTIED, cid, f"purged={report.trash_purged}"
            )
            report.reached = DeprovisionPhase.TRASH_EMPTIED

        if done < DeprovisionPhase.CONVERTED:
            cid = new_correlation_id()
            if self.context.config.deprovision.convert_to_personal:
                self._convert(cid)
                report.converted = True
                detail = (
                    f"space_amount={self.context.config.deprovision.personal_quota_bytes}"
                )
            else:
                log_with_context(
                    logging.INFO,
                    "Conversion to a personal account is disabled, leaving account "
                    "in the enterprise",
                    **self._subject,
                )
                detail = "skipped"
            self._record(DeprovisionPhase.CONVERTED, cid, detail)
            report.reached = DeprovisionPhase.CONVERTED

        if done < DeprovisionPhase.NOTIFIED:
            cid = new_correlation_id()
            report.notified = self._notify()
            self._record(
                DeprovisionPhase.NOTIFIED,
                cid,
                "sent" if report.notified else "not sent",
            )
            report.reached = DeprovisionPhase.NOTIFIED

        report.duration = time.time() - started
        return report

    # -- Bookkeeping ----------------------------------------------------------

    def _record(self, phase: DeprovisionPhase, correlation_id: str, detail: str) -> None:
        try:
            self.context.store.insert_deprovision_record(
                DeprovisionRecord(
                    user_id=self.target.user_id,
                    user_login=self.target.user_login,
                    phase=int(phase),
                    correlation_id=correlation_id,
                    detail=detail,
                )
            )
        except JobStoreError as e:
            raise self._abort(phase.name.lower(), e) from e
        log_with_context(
            logging.INFO,
            f"Deprovision phase {phase.name} complete",
            correlation_id=correlation_id,
            phase=phase.name,
            **self._subject,
        )

    def _abort(self, phase: str, fault: Exception) -> WorkflowAbortedError:
        log_with_context(
            logging.ERROR,
            f"Deprovision of {self.target.user_login} aborted during {phase}: {fault}",
            phase=phase,
            correlation_id=getattr(fault, "correlation_id", None),
            **self._subject,
        )
        report_abort(
            self.context.notifier,
            self.context.config.notifications,
            phase,
            fault,
            self._subject,
        )
        return WorkflowAbortedError(
            f"Deprovision of {self.target.user_login} aborted during {phase}: {fault}",
            phase=phase,
            cause=fault,
        )

    # -- Singleton phases -----------------------------------------------------

    def _activate(self) -> str:
        cid = new_correlation_id()
        try:
            self.context.executor.call(
                "Activate account",
                lambda: self.admin_client.update_user(self.target.user_id, status="active"),
                self._max_attempts,
                correlation_id=cid,
                **self._subject,
            )
        except RemoteFault as fault:
            raise self._abort("activate", fault) from fault
        return cid

    def _empty_trash(self, correlation_id: str) -> int:
        """Purge the account's own trashed items concurrently; returns the count."""
        user_id = self.target.user_id
        client = self.user_client
        try:
            trashed = self.context.executor.call(
                "List trashed items",
                lambda: list(client.list_trashed_items()),
                self._max_attempts,
                correlation_id=correlation_id,
                **self._subject,
            )
        except RemoteFault as fault:
            raise self._abort("empty_trash", fault) from fault

        owned = [
            t
            for t in trashed
            if _owner_id(t) == user_id
            and t.get("type") in (ItemKind.FILE.value, ItemKind.FOLDER.value)
        ]
        with ThreadPoolExecutor(max_workers=self.context.max_workers) as pool:
            futures = [
                pool.submit(self._purge_trashed, entry, client, correlation_id)
                for entry in owned
            ]
            for future in as_completed(futures):
                try:
                    future.result()
                except RemoteFault as fault:
                    for pending in futures:
                        pending.cancel()
                    raise self._abort("empty_trash", fault) from fault
        return len(owned)

    def _purge_trashed(self, entry: BoxItem, client: BoxClient, correlation_id: str) -> None:
        ops = item_operations(entry["type"], client)
        item_id = str(entry.get("id"))
        self.context.executor.call(
            f"Purge trashed {ops.kind.value}",
            lambda: ops.purge(item_id),
            self._max_attempts,
            correlation_id=correlation_id,
            item_id=item_id,
            item_type=ops.kind.value,
            **self._subject,
        )

    def _convert(self, correlation_id: str) -> None:
        quota = self.context.config.deprovision.personal_quota_bytes
        try:
            self.context.executor.call(
                "Set personal storage quota",
                lambda: self.admin_client.update_user(
                    self.target.user_id, space_amount=quota
                ),
                self._max_attempts,
                correlation_id=correlation_id,
                **self._subject,
            )
            self.context.executor.call(
                "Detach account from enterprise",
                lambda: self.admin_client.detach_from_enterprise(self.target.user_id),
                self._max_attempts,
                correlation_id=correlation_id,
                **self._subject,
            )
        except RemoteFault as fault:
            raise self._abort("convert", fault) from fault

    def _notify(self) -> bool:
        config = self.context.config.notifications
        if not config.notify_users:
            log_with_context(
                logging.INFO, "Account holder notifications are disabled", **self._subject
            )
            return False
        result = notify_account_holder(
            self.context.notifier, config, self.target.user_login, self.target.user_id
        )
        return result.success

    # -- Drain loop -----------------------------------------------------------

    def _drain(self, report: DeprovisionReport, correlation_id: str) -> None:
        """Remove owned items and internal collaborations until a round is empty."""
        summary = PhaseSummary(phase="drain")
        ceiling = self.context.config.deprovision.max_drain_rounds

        while True:
            if self.target.rounds >= ceiling:
                report.failures = summary.failures
                report_phase_failures(
                    self.context.notifier,
                    self.context.config.notifications,
                    summary,
                    self._subject,
                )
                error = DrainLimitExceededError(self.target.user_id, self.target.rounds)
                log_with_context(logging.ERROR, str(error), phase="drain", **self._subject)
                report_abort(
                    self.context.notifier,
                    self.context.config.notifications,
                    "drain",
                    error,
                    self._subject,
                )
                raise error

            self.target.rounds += 1
            report.rounds = self.target.rounds
            candidates = self._find_candidates(summary, correlation_id)
            log_with_context(
                logging.INFO,
                f"Drain round {self.target.rounds}: {len(candidates)} candidate(s)",
                correlation_id=correlation_id,
                round=self.target.rounds,
                **self._subject,
            )
            if not candidates:
                break
            report.removed += self._remove_all(candidates, summary)

        report.failures = summary.failures
        report_phase_failures(
            self.context.notifier,
            self.context.config.notifications,
            summary,
            self._subject,
        )

    def _find_candidates(
        self, summary: PhaseSummary, correlation_id: str
    ) -> list[RemovalCandidate]:
        client = self.user_client
        try:
            entries = self.context.executor.call(
                "List root items",
                lambda: list(
                    client.list_folder_items(
                        ROOT_FOLDER_ID, fields=ROOT_ITEM_FIELDS
                    )
                ),
                self._max_attempts,
                correlation_id=correlation_id,
                **self._subject,
            )
        except RemoteFault as fault:
            raise self._abort("drain", fault) from fault

        owned, shared = partition_candidates(entries, self.target.user_id)
        if not shared:
            return owned

        resolved: list[RemovalCandidate] = []
        with ThreadPoolExecutor(max_workers=self.context.max_workers) as pool:
            futures = {
                pool.submit(self._resolve_collaborations, item, client): item
                for item in shared
            }
            for future in as_completed(futures):
                item = futures[future]
                try:
                    resolved.extend(future.result())
                except RemoteFault as fault:
                    summary.failures.append(
                        PhaseFailure(
                            record_id=f"resolve:{item.get('id')}",
                            fault=fault,
                            item_id=str(item.get("id")),
                        )
                    )
        return owned + sorted(resolved, key=lambda c: c.name)

    def _resolve_collaborations(
        self, item: BoxItem, client: BoxClient
    ) -> list[RemovalCandidate]:
        """The account's collaborations on a shared item and its shared subfolders."""
        cid = new_correlation_id()
        user_id = self.target.user_id
        ops = item_operations(item["type"], client)
        item_id = str(item.get("id"))

        found = collaboration_candidates(
            self.context.executor.call(
                f"Fetch {ops.kind.value} collaborations",
                lambda: ops.list_collaborations(item_id),
                self._max_attempts,
                correlation_id=cid,
                item_id=item_id,
                item_type=ops.kind.value,
                **self._subject,
            ),
            item,
            user_id,
        )
        if ops.kind is not ItemKind.FOLDER:
            return found

        # Access granted on a subfolder does not show up at the root
        children = self.context.executor.call(
            "List shared folder items",
            lambda: list(client.list_folder_items(item_id, fields=SUBFOLDER_FIELDS)),
            self._max_attempts,
            correlation_id=cid,
            folder_id=item_id,
            **self._subject,
        )
        subfolders = sorted(
            (
                c
                for c in children
                if c.get("type") == ItemKind.FOLDER.value and _owner_id(c) != user_id
            ),
            key=lambda c: c.get("name", ""),
        )
        for sub in subfolders:
            sub_id = str(sub.get("id"))
            found.extend(
                collaboration_candidates(
                    self.context.executor.call(
                        "Fetch folder collaborations",
                        lambda: list(client.list_folder_collaborations(sub_id)),
                        self._max_attempts,
                        correlation_id=cid,
                        item_id=sub_id,
                        item_type=ItemKind.FOLDER.value,
                        **self._subject,
                    ),
                    sub,
                    user_id,
                )
            )
        return found

    def _remove(
        self, candidate: RemovalCandidate, client: BoxClient, correlation_id: str
    ) -> None:
        """Remove one candidate; items are deleted and then purged as two steps.

        Each step retries on its own; a retried purge never repeats the delete.
        """
        if candidate.kind is RemovalKind.COLLABORATION:
            steps = [
                (
                    f"Remove internal collaboration on '{candidate.name}'",
                    lambda: client.remove_collaboration(candidate.target_id),
                )
            ]
        else:
            ops = item_operations(candidate.kind.value, client)
            steps = [
                (
                    f"Remove {ops.kind.value} '{candidate.name}'",
                    lambda: ops.delete(candidate.target_id),
                ),
                (
                    f"Purge {ops.kind.value} '{candidate.name}' from trash",
                    lambda: ops.purge(candidate.target_id),
                ),
            ]

        for label, action in steps:
            result = self.context.executor.run_step(
                label,
                action,
                self._max_attempts,
                correlation_id=correlation_id,
                item_id=candidate.item_id or candidate.target_id,
                item_type=candidate.kind.value,
                **self._subject,
            )
            if result.failed:
                assert result.fault is not None
                raise result.fault

    def _remove_all(
        self, candidates: list[RemovalCandidate], summary: PhaseSummary
    ) -> int:
        """Remove one round's candidates concurrently; returns how many went."""
        removed = 0
        client = self.user_client
        with ThreadPoolExecutor(max_workers=self.context.max_workers) as pool:
            futures = {
                pool.submit(self._remove, c, client, new_correlation_id()): c
                for c in candidates
            }
            for future in as_completed(futures):
                candidate = futures[future]
                try:
                    future.result()
                except RemoteFault as fault:
                    summary.failures.append(
                        PhaseFailure(
                            record_id=f"{candidate.kind.value}:{candidate.target_id}",
                            fault=fault,
                            item_id=candidate.item_id or candidate.target_id,
                        )
                    )
                else:
                    removed += 1
                    summary.succeeded += 1
        return removed

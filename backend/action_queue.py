"""
Deferred Action Queue

The holding area between "matched" and "executed". A match becomes a
pending entry due after the rule's buffer; once due, the entry is
re-validated against fresh data and either committed or cancelled.

Entry lifecycle:
    pending -> completed   destructive actions ran (or the item is already gone)
    pending -> cancelled   watchlisted, no longer matching, or protected
    pending -> error       an action failed; an operator must retry

Errors are never retried automatically.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

import journal
from action_executor import ActionExecutor, ActionReport, RuleMatch
from condition_evaluator import ConditionEvaluator, EvaluationContext
from context_builder import ContextBuilder
from exceptions import MediaItemNotFoundError
from media_adapters import MediaItem
from models import QueueItem, Rule, utcnow
from queue_store import CANCELLED, COMPLETED, ERROR, PENDING, QueueStore
from repositories import RuleRepository
from rule_schema import is_smart_rule

logger = logging.getLogger(__name__)

# Claims older than this are assumed to belong to a crashed pass
STALE_CLAIM_AGE = timedelta(hours=6)

SmartCheck = Callable[[Rule, MediaItem], Awaitable[bool]]


@dataclass
class EntryCheck:
    """Fresh re-validation of a pending entry."""
    verdict: str  # "ok", "gone", "watchlisted", "no_match", "rule_missing"
    reason: str = ""
    item: Optional[MediaItem] = None
    subject: Optional[MediaItem] = None
    context: Optional[EvaluationContext] = None
    rule: Optional[Rule] = None

    @property
    def ok(self) -> bool:
        return self.verdict == "ok"


@dataclass
class ProcessOutcome:
    queue_id: int
    title: Optional[str]
    status: str
    message: str = ""
    report: Optional[ActionReport] = None

    def to_dict(self) -> dict:
        result = {
            "queue_id": self.queue_id,
            "title": self.title,
            "status": self.status,
            "message": self.message,
        }
        if self.report is not None:
            result["actions"] = [r.to_dict() for r in self.report.results]
        return result


@dataclass
class ProcessSummary:
    processed: int = 0
    completed: int = 0
    cancelled: int = 0
    errors: int = 0
    skipped: int = 0
    outcomes: list[ProcessOutcome] = field(default_factory=list)

    def record(self, outcome: ProcessOutcome) -> None:
        self.outcomes.append(outcome)
        if outcome.status == COMPLETED:
            self.completed += 1
            self.processed += 1
        elif outcome.status == CANCELLED:
            self.cancelled += 1
            self.processed += 1
        elif outcome.status == ERROR:
            self.errors += 1
            self.processed += 1
        else:
            self.skipped += 1

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "completed": self.completed,
            "cancelled": self.cancelled,
            "errors": self.errors,
            "skipped": self.skipped,
            "results": [o.to_dict() for o in self.outcomes],
        }


class DeferredActionQueue:
    def __init__(
        self,
        executor: ActionExecutor,
        context_builder: ContextBuilder,
        store: Optional[QueueStore] = None,
        rules: Optional[RuleRepository] = None,
        evaluator: Optional[ConditionEvaluator] = None,
        max_per_run: int = 50,
        smart_check: Optional[SmartCheck] = None,
    ):
        self.executor = executor
        self.context_builder = context_builder
        self.store = store or QueueStore()
        self.rules = rules or RuleRepository()
        self.evaluator = evaluator or ConditionEvaluator()
        self.max_per_run = max_per_run
        self.smart_check = smart_check

    # =========================================================================
    # Insertion
    # =========================================================================

    def enqueue(self, **kwargs):
        """Insert a pending entry (see QueueStore.enqueue)."""
        return self.store.enqueue(**kwargs)

    # =========================================================================
    # Re-validation
    # =========================================================================

    async def check_entry(self, entry: QueueItem) -> EntryCheck:
        """Re-validate a pending entry against fresh media-server data."""
        rule = self.rules.find(entry.rule_id)
        if rule is None or not rule.is_active:
            return EntryCheck("rule_missing", "Rule no longer exists or is inactive", rule=rule)

        try:
            item = await self.context_builder.fetch_item(entry.media_item_id)
        except MediaItemNotFoundError:
            return EntryCheck("gone", "Item no longer exists", rule=rule)

        context = await self.context_builder.build(item, rule.target_type)
        subject = await self.context_builder.subject_for(item)
        check = EntryCheck("ok", item=item, subject=subject, context=context, rule=rule)

        if context.on_watchlist:
            check.verdict = "watchlisted"
            check.reason = f"Saved by watchlist ({context.wanted_reason})"
            return check

        if is_smart_rule(rule):
            if self.smart_check is not None and not await self.smart_check(rule, item):
                check.verdict = "no_match"
                check.reason = "No longer a smart deletion candidate"
            return check

        if not self.evaluator.evaluate(rule.get_conditions(), item, context):
            check.verdict = "no_match"
            check.reason = "No longer matches rule conditions"
        return check

    # =========================================================================
    # Processing
    # =========================================================================

    async def process_due(self, now: Optional[datetime] = None, dry_run: bool = False,
                          limit: Optional[int] = None) -> ProcessSummary:
        """
        Process live pending entries whose buffer has elapsed, oldest due
        first, up to the per-run cap.

        With dry_run, entries are re-validated and previewed but stay pending.
        """
        now = now or utcnow()
        limit = limit or self.max_per_run
        self.context_builder.reset_pass_cache()
        due = self.store.due_items(now, limit)
        summary = ProcessSummary()
        if not due:
            logger.debug("[QUEUE] No due queue entries")
            return summary

        logger.info(f"[QUEUE] Processing {len(due)} due entries (dry_run={dry_run})")
        for entry in due:
            token = self.store.claim(entry.id, now)
            if token is None:
                logger.info(f"[QUEUE] Entry {entry.id} claimed elsewhere, skipping")
                summary.record(ProcessOutcome(entry.id, entry.title, "skipped", "Claimed by another pass"))
                continue
            outcome = await self._process_claimed(entry, token, dry_run)
            summary.record(outcome)

        logger.info(
            f"[QUEUE] Processed {summary.processed}: {summary.completed} completed, "
            f"{summary.cancelled} cancelled, {summary.errors} errors"
        )
        return summary

    async def _process_claimed(self, entry: QueueItem, token: str, dry_run: bool) -> ProcessOutcome:
        try:
            check = await self.check_entry(entry)

            if check.verdict == "gone":
                return self._finish(entry, token, COMPLETED, check.reason, dry_run)
            if not check.ok:
                return self._finish(entry, token, CANCELLED, check.reason, dry_run)

            match = RuleMatch(
                item=check.item,
                context=check.context,
                library=entry.get_metadata().get("library"),
                smart_mode=is_smart_rule(check.rule),
                subject=check.subject,
            )
            report = await self.executor.commit(check.rule, match, dry_run=dry_run)

            if report.protected:
                return self._finish(entry, token, CANCELLED, report.protected_reason, dry_run, report)
            if not report.results:
                return self._finish(entry, token, COMPLETED, "No destructive actions to run", dry_run, report)
            if not report.all_succeeded:
                return self._finish(entry, token, ERROR, report.first_error, dry_run, report)

            outcome = self._finish(entry, token, COMPLETED, "Actions executed", dry_run, report)
            if not dry_run and outcome.status == COMPLETED:
                journal.increment_daily(deletions_count=1, storage_saved_bytes=int(check.context.file_size or 0))
            return outcome
        except Exception as e:
            logger.error(f"[QUEUE] Processing failed for '{entry.title}': {e}")
            return self._finish(entry, token, ERROR, str(e), dry_run)

    def _finish(self, entry: QueueItem, token: str, status: str, message: Optional[str],
                dry_run: bool, report: Optional[ActionReport] = None) -> ProcessOutcome:
        if dry_run:
            self.store.release(entry.id, token)
            return ProcessOutcome(entry.id, entry.title, PENDING, f"[DRY RUN] Would mark {status}: {message}", report)

        error_message = message if status in (ERROR, CANCELLED) else None
        if not self.store.transition(entry.id, status, error_message=error_message, token=token):
            return ProcessOutcome(entry.id, entry.title, "skipped", "Entry changed during processing", report)

        level = logging.WARNING if status == ERROR else logging.INFO
        logger.log(level, f"[QUEUE] '{entry.title}' -> {status}: {message}")
        journal.emit(
            "queue", status, entry.title or entry.media_item_id, message or status,
            entity_id=entry.media_item_id,
            details={"queue_id": entry.id, "rule_id": entry.rule_id},
        )
        return ProcessOutcome(entry.id, entry.title, status, message or "", report)

    # =========================================================================
    # Stale cleanup
    # =========================================================================

    async def cleanup_stale(self) -> dict:
        """
        Re-validate every live pending entry. Vanished items are removed;
        watchlisted or no-longer-matching ones are cancelled.
        """
        self.context_builder.reset_pass_cache()
        entries = self.store.pending_live()
        removed = kept = 0

        for entry in entries:
            try:
                check = await self.check_entry(entry)
            except Exception as e:
                logger.warning(f"[QUEUE] Could not re-check '{entry.title}', keeping it: {e}")
                kept += 1
                continue

            if check.verdict == "gone":
                if self.store.delete_pending(entry.id):
                    logger.info(f"[QUEUE] Removed '{entry.title}': {check.reason}")
                    removed += 1
                continue
            if not check.ok:
                if self.store.transition(entry.id, CANCELLED, error_message=check.reason):
                    logger.info(f"[QUEUE] Cancelled '{entry.title}': {check.reason}")
                    journal.emit(
                        "queue", CANCELLED, entry.title or entry.media_item_id, check.reason,
                        entity_id=entry.media_item_id,
                        details={"queue_id": entry.id, "rule_id": entry.rule_id, "stage": "cleanup"},
                    )
                    removed += 1
                continue
            kept += 1

        if removed:
            logger.info(f"[QUEUE] Stale cleanup removed {removed}, kept {kept}")
        return {"removed": removed, "kept": kept}

    # =========================================================================
    # Operator operations
    # =========================================================================

    def cancel(self, queue_id: int, reason: str = "Cancelled by operator") -> bool:
        cancelled = self.store.transition(queue_id, CANCELLED, error_message=reason)
        if cancelled:
            entry = self.store.get(queue_id)
            journal.emit(
                "queue", CANCELLED, (entry.title if entry else None) or str(queue_id), reason,
                entity_id=entry.media_item_id if entry else None,
                details={"queue_id": queue_id},
            )
        return cancelled

    def retry(self, queue_id: int) -> bool:
        """Re-arm an errored entry so the next pass picks it up."""
        retried = self.store.reset_for_retry(queue_id)
        if retried:
            logger.info(f"[QUEUE] Entry {queue_id} queued for retry")
        return retried

    def list_items(self, status: Optional[str] = None, dry_run: Optional[bool] = None,
                   limit: int = 200) -> list[dict]:
        return [item.to_dict() for item in self.store.list_items(status, dry_run, limit)]

    def purge_terminal(self, older_than_days: int) -> int:
        return self.store.purge_terminal(older_than_days)

    def release_stale_claims(self) -> int:
        return self.store.release_stale_claims(STALE_CLAIM_AGE)

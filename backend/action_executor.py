"""
Action Executor

Runs a rule's actions for a match in two distinct phases:

  preview  - right after the match: non-destructive actions only. The main
             one, add_to_queue, schedules the match for later execution.
  commit   - from the queue processor once the buffer has elapsed:
             destructive actions only, after a final manual-protection check.

Each action is isolated: a failure is recorded in its ActionResult and the
remaining actions still run.
"""
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Optional

import journal
from condition_evaluator import EvaluationContext
from exceptions import MediaItemNotFoundError, OrchestratorNotFoundError
from exclusion_guard import ExclusionGuard
from media_adapters import (
    DownloadOrchestratorAdapter,
    MediaItem,
    MediaLibraryAdapter,
    orchestrator_episode_for,
)
from queue_store import QueueStore
from rule_schema import Action, ActionType, parse_actions, split_actions

logger = logging.getLogger(__name__)


@dataclass
class RuleMatch:
    """An item a rule matched, with the context it was evaluated in."""
    item: MediaItem
    context: EvaluationContext
    library: Optional[str] = None
    show: Optional[str] = None
    smart_mode: bool = False
    subject: Optional[MediaItem] = None  # parent show for episodes and seasons

    def to_dict(self) -> dict:
        return {
            "item_id": self.item.id,
            "title": self.item.display_title,
            "type": self.item.type,
            "year": self.item.year,
            "library": self.library,
            "show": self.show,
            "smart_mode": self.smart_mode,
            "context": self.context.to_dict(),
        }


@dataclass
class ActionResult:
    """Result of executing a single action."""
    success: bool
    action_type: str
    description: str
    error: Optional[str] = None
    skipped: bool = False
    details: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        result = {
            "action": self.action_type,
            "success": self.success,
            "message": self.description,
        }
        if self.error:
            result["error"] = self.error
        if self.skipped:
            result["skipped"] = True
        if self.details:
            result["details"] = self.details
        return result


@dataclass
class ActionReport:
    """All action results for one match in one phase."""
    phase: str  # "preview" or "commit"
    dry_run: bool
    results: list[ActionResult] = field(default_factory=list)
    protected_reason: Optional[str] = None

    def add(self, result: ActionResult) -> None:
        self.results.append(result)

    @property
    def protected(self) -> bool:
        return self.protected_reason is not None

    @property
    def all_succeeded(self) -> bool:
        return all(r.success for r in self.results)

    @property
    def first_error(self) -> Optional[str]:
        for r in self.results:
            if not r.success:
                return r.error or r.description
        return None

    def to_dict(self) -> dict:
        return {
            "phase": self.phase,
            "dry_run": self.dry_run,
            "protected": self.protected_reason,
            "results": [r.to_dict() for r in self.results],
        }


class ActionExecutor:
    def __init__(
        self,
        media: MediaLibraryAdapter,
        orchestrator: Optional[DownloadOrchestratorAdapter] = None,
        queue: Optional[QueueStore] = None,
        guard: Optional[ExclusionGuard] = None,
        default_buffer_days: int = 15,
        collection_name: str = "",
        context_builder: Any = None,
    ):
        self.media = media
        self.orchestrator = orchestrator
        self.queue = queue or QueueStore()
        self.guard = guard or ExclusionGuard()
        self.default_buffer_days = default_buffer_days
        self.collection_name = collection_name
        self.context_builder = context_builder

    # =========================================================================
    # Phases
    # =========================================================================

    async def preview(self, rule, match: RuleMatch, dry_run: bool) -> ActionReport:
        """Run the rule's non-destructive actions for a fresh match."""
        preview_actions, _ = split_actions(parse_actions(rule.get_actions()))
        report = ActionReport(phase="preview", dry_run=dry_run)

        for action in preview_actions:
            result = await self._run_isolated(action, rule, match, dry_run, report)
            report.add(result)
        return report

    async def commit(self, rule, match: RuleMatch, dry_run: bool = False) -> ActionReport:
        """Run the rule's destructive actions for a queue entry whose buffer elapsed."""
        actions = parse_actions(rule.get_actions())
        _, commit_actions = split_actions(actions)
        report = ActionReport(phase="commit", dry_run=dry_run)

        reason = self.guard.is_manually_protected(match.item, match.subject, now=match.context.now)
        if reason:
            logger.info(f"[ACTIONS] Skipping '{match.item.display_title}' for rule '{rule.name}': {reason}")
            report.protected_reason = reason
            report.add(ActionResult(True, "skipped", reason, skipped=True))
            return report

        for action in commit_actions:
            result = await self._run_isolated(action, rule, match, dry_run, report, all_actions=actions)
            report.add(result)
        return report

    async def _run_isolated(self, action: Action, rule, match: RuleMatch, dry_run: bool,
                            report: ActionReport, all_actions: Optional[list[Action]] = None) -> ActionResult:
        title = match.item.display_title
        try:
            result = await self.execute(action, rule, match, dry_run, all_actions or [])
        except Exception as e:
            logger.error(f"[ACTIONS] {action.type} failed for '{title}' (rule '{rule.name}'): {e}")
            journal.emit(
                "action", "failed", title, f"Action failed: {action.type}",
                entity_id=match.item.id,
                details={"rule_id": rule.id, "action": action.type, "error": str(e)},
                dry_run=dry_run,
            )
            return ActionResult(False, action.type, f"Action failed: {action.type}", error=str(e))

        if result.success and not dry_run and not result.skipped:
            journal.emit(
                "action", action.type, title, result.description,
                entity_id=match.item.id,
                details={"rule_id": rule.id, "phase": report.phase},
            )
        return result

    # =========================================================================
    # Dispatch
    # =========================================================================

    async def execute(self, action: Action, rule, match: RuleMatch, dry_run: bool,
                      all_actions: list[Action]) -> ActionResult:
        action_type = action.action_type
        logger.debug(f"[ACTIONS] {action.type} on '{match.item.display_title}' (dry_run={dry_run})")

        if action_type is None:
            return ActionResult(False, action.type, f"Unknown action: {action.type}",
                                error=f"Unknown action: {action.type}")

        if action_type == ActionType.ADD_TO_QUEUE:
            return await self._add_to_queue(action, rule, match, dry_run)

        if dry_run:
            return ActionResult(True, action.type, f"[DRY RUN] Would execute: {action.type}")

        if action_type == ActionType.REMOVE_FROM_LIBRARY:
            return await self._remove_from_library(action, match)
        if action_type == ActionType.REMOVE_FROM_ORCHESTRATOR:
            delete_files = any(a.action_type == ActionType.DELETE_FILES for a in all_actions)
            return await self._remove_from_orchestrator(action, match, delete_files)
        if action_type == ActionType.DELETE_FILES:
            # Modifier for remove_from_orchestrator
            return ActionResult(True, action.type, "Files will be deleted with the orchestrator removal",
                                skipped=True)
        if action_type in (ActionType.ADD_TAG, ActionType.REMOVE_TAG):
            return await self._tag(action, action_type, match)
        if action_type == ActionType.UNMONITOR:
            return await self._unmonitor(action, match)

        logger.warning(f"Unhandled action type: {action.type}")
        return ActionResult(False, action.type, f"Unhandled action type: {action.type}",
                            error=f"Unhandled action type: {action.type}")

    # =========================================================================
    # Non-destructive
    # =========================================================================

    def buffer_days_for(self, rule) -> int:
        return rule.buffer_days if rule.buffer_days is not None else self.default_buffer_days

    async def _add_to_queue(self, action: Action, rule, match: RuleMatch, dry_run: bool) -> ActionResult:
        item = match.item
        action_at = match.context.now + timedelta(days=self.buffer_days_for(rule))
        metadata = item.snapshot()
        metadata["library"] = match.library
        metadata["rule_name"] = rule.name
        if match.smart_mode and match.context.smart_analysis:
            metadata["smart"] = match.context.smart_analysis

        outcome = self.queue.enqueue(
            media_item_id=item.id,
            media_type=item.type,
            action_at=action_at,
            dry_run=dry_run,
            rule_id=rule.id,
            tmdb_id=item.tmdb_id,
            title=item.display_title,
            year=item.year,
            metadata=metadata,
        )

        if dry_run:
            message = ("[DRY RUN] Already in queue (real entry exists)" if not outcome.inserted
                       else "[DRY RUN] Would add to queue")
            return ActionResult(True, action.type, message,
                                details={"action_at": action_at.isoformat(), "outcome": outcome.outcome})

        if not outcome.inserted:
            return ActionResult(True, action.type, "Already in queue", skipped=True,
                                details={"outcome": outcome.outcome})

        message = f"Added to queue, due {action_at.date().isoformat()}"
        collection = action.params.get("collection_name") or self.collection_name
        if collection:
            try:
                await self.media.add_to_collection(item, collection)
                message += f' and collection "{collection}"'
            except Exception as e:
                # The queue entry is what matters; the collection is cosmetic
                logger.warning(f"[ACTIONS] Could not add '{item.display_title}' to collection '{collection}': {e}")
        return ActionResult(True, action.type, message,
                            details={"action_at": action_at.isoformat(), "outcome": outcome.outcome,
                                     "queue_id": outcome.item.id if outcome.item else None})

    async def _tag(self, action: Action, action_type: ActionType, match: RuleMatch) -> ActionResult:
        record = match.context.orchestrator_record
        tag = action.params.get("tag") or action.params.get("tag_name")
        if self.orchestrator is None or record is None:
            return ActionResult(True, action.type, "Not in orchestrator (skipped)", skipped=True)
        if not tag:
            return ActionResult(False, action.type, "No tag configured", error="No tag configured")
        if action_type == ActionType.ADD_TAG:
            await self.orchestrator.add_tag(record, tag)
            return ActionResult(True, action.type, f'Added tag "{tag}"')
        await self.orchestrator.remove_tag(record, tag)
        return ActionResult(True, action.type, f'Removed tag "{tag}"')

    async def _unmonitor(self, action: Action, match: RuleMatch) -> ActionResult:
        record = match.context.orchestrator_record
        if self.orchestrator is None or record is None:
            return ActionResult(True, action.type, "Not in orchestrator (skipped)", skipped=True)
        await self.orchestrator.unmonitor(record)
        return ActionResult(True, action.type, f"Unmonitored {record.kind} in orchestrator")

    # =========================================================================
    # Destructive
    # =========================================================================

    async def _remove_from_library(self, action: Action, match: RuleMatch) -> ActionResult:
        try:
            await self.media.delete_item(match.item.id)
        except MediaItemNotFoundError:
            return ActionResult(True, action.type, "Already removed from library", skipped=True)
        return ActionResult(True, action.type, "Removed from library")

    async def _remove_from_orchestrator(self, action: Action, match: RuleMatch,
                                        delete_files: bool) -> ActionResult:
        record = match.context.orchestrator_record
        if self.orchestrator is None or record is None:
            return ActionResult(True, action.type, "Not in orchestrator (skipped)", skipped=True)

        item = match.item
        try:
            if item.type in ("episode", "season"):
                return await self._remove_episodes(action, match, delete_files)

            add_exclusion = action.params.get("add_exclusion", True) is not False
            if record.kind == "movie":
                await self.orchestrator.delete_movie(record.id, delete_files, add_exclusion)
            else:
                await self.orchestrator.delete_series(record.id, delete_files, add_exclusion)
        except OrchestratorNotFoundError:
            if self.context_builder is not None and match.subject is not None:
                self.context_builder.clear_link(match.subject.id)
            elif self.context_builder is not None:
                self.context_builder.clear_link(item.id)
            return ActionResult(True, action.type, "Not in orchestrator (skipped)", skipped=True)

        files = "files removed" if delete_files else "files kept"
        return ActionResult(True, action.type, f"Deleted {record.kind} from orchestrator ({files})")

    async def _remove_episodes(self, action: Action, match: RuleMatch, delete_files: bool) -> ActionResult:
        """Unmonitor (and optionally delete files of) an episode or a season's episodes."""
        record = match.context.orchestrator_record
        item = match.item
        episodes = await self.orchestrator.get_episodes(record.id)

        if item.type == "episode":
            target = orchestrator_episode_for(episodes, item.parent_index, item.index)
            targets = [target] if target else []
        else:
            targets = [ep for ep in episodes if ep.season_number == item.index]

        if not targets:
            return ActionResult(True, action.type, "Episode not found in orchestrator (skipped)", skipped=True)

        await self.orchestrator.unmonitor_episodes([ep.id for ep in targets])
        removed_files = 0
        if delete_files:
            for ep in targets:
                if ep.episode_file_id:
                    await self.orchestrator.delete_episode_file(ep.episode_file_id)
                    removed_files += 1

        noun = "Episode" if item.type == "episode" else f"{len(targets)} episodes"
        if removed_files:
            return ActionResult(True, action.type, f"{noun} unmonitored and files deleted in orchestrator",
                                details={"files_deleted": removed_files})
        return ActionResult(True, action.type, f"{noun} unmonitored in orchestrator")

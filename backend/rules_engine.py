"""
Rules Engine

Evaluates lifecycle rules against the media library and drives the
two-phase action protocol:

    run_all_rules
      -> cleanup_stale         (live runs only)
      -> evaluate_rule         per active rule, priority order, sequential
           -> preview actions  per match (enqueue with buffer)
      -> process_due           due queue entries: re-validate, then commit
      -> daily stats

Smart rules hand per-show analysis to the VelocityProtectionAnalyzer and
filter its deletion candidates through the rule's own conditions.
run_redownload_pass asks the orchestrator for episodes active viewers will
reach soon; the redownload task runs it on its own schedule.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import AsyncIterator, Optional

import journal
from action_executor import ActionExecutor, RuleMatch
from action_queue import DeferredActionQueue
from condition_evaluator import ConditionEvaluator
from config import MediarrSettings, get_settings
from context_builder import ContextBuilder
from exceptions import MediaItemNotFoundError
from exclusion_guard import ExclusionGuard
from media_adapters import (
    DownloadOrchestratorAdapter,
    Library,
    MediaItem,
    MediaLibraryAdapter,
    orchestrator_episode_for,
)
from models import Rule, utcnow
from queue_store import QueueStore
from repositories import RuleRepository, VelocityStore, WatchlistStore
from rule_schema import LIBRARY_KIND_FOR_TARGET, SmartOptions, TargetType, is_smart_rule
from run_coordinator import LIFECYCLE_KEY, RunCoordinator, get_run_coordinator
from throttle import ApiThrottle
from velocity_analyzer import (
    HISTORY_WINDOW_DAYS,
    ShowAnalysis,
    VelocityProtectionAnalyzer,
    build_episodes,
    redownload_plan,
)

logger = logging.getLogger(__name__)


@dataclass
class SmartShow:
    """A show's analysis together with the media items it was built from."""
    show: MediaItem
    analysis: ShowAnalysis
    seasons: list[MediaItem] = field(default_factory=list)
    episodes: dict[str, MediaItem] = field(default_factory=dict)

    def episodes_of_season(self, season: MediaItem) -> list[MediaItem]:
        return [ep for ep in self.episodes.values() if ep.parent_id == season.id or
                (ep.parent_id is None and ep.parent_index == season.index)]


class RulesEngine:
    """
    Usage:
        engine = RulesEngine(media_adapter, orchestrator_adapter)

        # Preview what would happen
        summary = await engine.run_all_rules(dry_run=True)

        # Run one rule now
        result = await engine.run_rule(rule_id)
    """

    def __init__(
        self,
        media: MediaLibraryAdapter,
        orchestrator: Optional[DownloadOrchestratorAdapter] = None,
        settings: Optional[MediarrSettings] = None,
        rules: Optional[RuleRepository] = None,
        guard: Optional[ExclusionGuard] = None,
        queue_store: Optional[QueueStore] = None,
        velocity_store: Optional[VelocityStore] = None,
        watchlist: Optional[WatchlistStore] = None,
        throttle: Optional[ApiThrottle] = None,
        coordinator: Optional[RunCoordinator] = None,
        clock=utcnow,
    ):
        self.media = media
        self.orchestrator = orchestrator
        self.settings = settings or get_settings()
        self.rules = rules or RuleRepository()
        self.guard = guard or ExclusionGuard()
        self.velocity_store = velocity_store or VelocityStore()
        self.throttle = throttle if throttle is not None else ApiThrottle.from_settings(self.settings)
        self.coordinator = coordinator or get_run_coordinator()
        self.clock = clock
        self.evaluator = ConditionEvaluator()
        self.context_builder = ContextBuilder(
            media=media,
            orchestrator=orchestrator,
            watchlist=watchlist or WatchlistStore(),
            throttle=self.throttle,
            clock=clock,
        )
        queue_store = queue_store or QueueStore()
        self.executor = ActionExecutor(
            media,
            orchestrator,
            queue=queue_store,
            guard=self.guard,
            default_buffer_days=self.settings.default_buffer_days,
            collection_name=self.settings.leaving_soon_collection,
            context_builder=self.context_builder,
        )
        self.queue = DeferredActionQueue(
            self.executor,
            self.context_builder,
            store=queue_store,
            rules=self.rules,
            evaluator=self.evaluator,
            max_per_run=self.settings.max_deletions_per_run,
            smart_check=self.is_smart_candidate,
        )

    async def _call(self, fn, *args, **kwargs):
        if self.throttle is None:
            return await fn(*args, **kwargs)
        return await self.throttle.call(fn, *args, **kwargs)

    # =========================================================================
    # Runs
    # =========================================================================

    async def run_all_rules(self, dry_run: Optional[bool] = None) -> dict:
        """Evaluate every active rule, preview matches, then process due entries."""
        if dry_run is None:
            dry_run = self.settings.dry_run

        async with self.coordinator.hold(LIFECYCLE_KEY, "run_all_rules"):
            started_at = self.clock()
            logger.info(f"[RULES] Starting rule run (dry_run={dry_run})")
            self.context_builder.reset_pass_cache()
            self.guard.refresh(started_at)

            cleanup = None
            if not dry_run:
                cleanup = await self.queue.cleanup_stale()

            rules = self.rules.list_active()
            results = []
            errors = []
            match_count = 0

            for rule in rules:
                try:
                    matches = await self.evaluate_rule(rule, dry_run)
                except Exception as e:
                    logger.error(f"[RULES] Rule '{rule.name}' failed: {e}")
                    errors.append({"rule_id": rule.id, "rule": rule.name, "error": str(e)})
                    continue

                match_count += len(matches)
                results.extend(await self._preview_matches(rule, matches, dry_run))

            processed = await self.queue.process_due(self.clock(), dry_run=dry_run)

            journal.increment_daily(rules_run=len(rules))
            journal.set_daily_queue_size(self.queue.store.count_pending(dry_run=False))

            duration = (self.clock() - started_at).total_seconds()
            logger.info(
                f"[RULES] Rule run finished in {duration:.1f}s: {len(rules)} rules, "
                f"{match_count} matches, {processed.processed} queue entries processed, {len(errors)} errors"
            )
            return {
                "rules_run": len(rules),
                "matches": match_count,
                "queue_processed": processed.processed,
                "queue": processed.to_dict(),
                "stale_cleanup": cleanup,
                "dry_run": dry_run,
                "results": results,
                "errors": errors,
            }

    async def run_rule(self, rule_id: int, dry_run: Optional[bool] = None) -> dict:
        """Run a single rule now: evaluate and preview its matches."""
        if dry_run is None:
            dry_run = self.settings.dry_run
        rule = self.rules.get(rule_id)

        async with self.coordinator.hold(LIFECYCLE_KEY, f"run_rule:{rule_id}"):
            self.context_builder.reset_pass_cache()
            self.guard.refresh(self.clock())
            matches = await self.evaluate_rule(rule, dry_run)
            results = await self._preview_matches(rule, matches, dry_run)
            return {
                "rule_id": rule.id,
                "rule": rule.name,
                "dry_run": dry_run,
                "matches": len(matches),
                "items": [m.to_dict() for m in matches],
                "results": results,
            }

    async def _preview_matches(self, rule: Rule, matches: list[RuleMatch], dry_run: bool) -> list[dict]:
        results = []
        for match in matches:
            report = await self.executor.preview(rule, match, dry_run)
            results.append({
                "rule": rule.name,
                "item": match.item.display_title,
                "actions": [r.to_dict() for r in report.results],
            })
        return results

    # =========================================================================
    # Evaluation
    # =========================================================================

    async def evaluate_rule(self, rule: Rule, dry_run: bool = True) -> list[RuleMatch]:
        """
        Evaluate one rule and return its matches. Rule stats are recorded
        whether evaluation succeeds or fails.
        """
        matches: list[RuleMatch] = []
        smart = is_smart_rule(rule)
        try:
            if smart:
                matches = await self._evaluate_smart(rule, dry_run)
            else:
                matches = await self._evaluate_standard(rule)
        except Exception as e:
            journal.emit(
                "rule", "failed", rule.name, f"Rule evaluation failed: {e}",
                entity_id=rule.id, details={"error": str(e)}, dry_run=dry_run,
            )
            raise
        finally:
            self.rules.record_run(rule.id, len(matches))

        logger.info(f"[RULES] Rule '{rule.name}' evaluated: {len(matches)} matches (smart={smart})")
        journal.emit(
            "rule", "evaluated", rule.name, f"Rule evaluated with {len(matches)} matches",
            entity_id=rule.id,
            details={"matches": len(matches), "smart_mode": smart},
            dry_run=dry_run,
        )
        return matches

    def _target_libraries(self, rule: Rule, libraries: list[Library]) -> list[Library]:
        kind = LIBRARY_KIND_FOR_TARGET.get(TargetType(rule.target_type))
        wanted = {str(i) for i in rule.get_target_library_ids()}
        return [lib for lib in libraries if lib.kind == kind and (not wanted or str(lib.id) in wanted)]

    async def _target_items(self, rule: Rule, library: Library) -> AsyncIterator[MediaItem]:
        """Library contents expanded to the rule's target granularity."""
        target = rule.target_type
        contents = await self._call(self.media.get_library_contents, library.id)

        for entry in contents:
            try:
                if target in (TargetType.MOVIES.value, TargetType.SHOWS.value):
                    yield await self._call(self.media.get_item_metadata, entry.id)
                    continue
                seasons = await self._call(self.media.get_item_children, entry.id)
                for season in seasons:
                    if target == TargetType.SEASONS.value:
                        yield season
                        continue
                    for episode in await self._call(self.media.get_item_children, season.id):
                        yield episode
            except MediaItemNotFoundError:
                logger.info(f"[RULES] '{entry.title}' disappeared during the scan")
            except Exception as e:
                logger.error(f"[RULES] Error expanding '{entry.title}': {e}")

    async def _evaluate_standard(self, rule: Rule) -> list[RuleMatch]:
        conditions = rule.get_conditions()
        libraries = self._target_libraries(rule, await self._call(self.media.get_libraries))
        matches = []

        for library in libraries:
            async for item in self._target_items(rule, library):
                try:
                    context = await self.context_builder.build(item, rule.target_type)
                    if self.guard.is_excluded(item, context):
                        continue
                    if self.evaluator.evaluate(conditions, item, context):
                        subject = await self.context_builder.subject_for(item)
                        matches.append(RuleMatch(
                            item=item,
                            context=context,
                            library=library.title,
                            show=item.show_title,
                            subject=subject if subject is not item else None,
                        ))
                except Exception as e:
                    logger.error(f"[RULES] Error evaluating '{item.display_title}': {e}")
        return matches

    # =========================================================================
    # Smart mode
    # =========================================================================

    async def analyze_show(self, show: MediaItem, options: SmartOptions,
                           now: Optional[datetime] = None) -> SmartShow:
        """Load a show's episodes and watch history and run the velocity analysis."""
        now = now or self.clock()
        seasons = await self._call(self.media.get_item_children, show.id)
        episode_items: dict[str, MediaItem] = {}
        for season in seasons:
            for episode in await self._call(self.media.get_item_children, season.id):
                if episode.parent_index is None:
                    episode.parent_index = season.index
                episode_items[episode.id] = episode

        views = await self._call(
            self.media.get_watch_history, show.id, now - timedelta(days=HISTORY_WINDOW_DAYS)
        )
        analysis = VelocityProtectionAnalyzer(options).analyze(
            build_episodes(episode_items.values()),
            views,
            now,
            velocity_records=self.velocity_store.for_show(show.id),
            show_id=show.id,
            show_title=show.title,
        )
        return SmartShow(show=show, analysis=analysis, seasons=seasons, episodes=episode_items)

    @staticmethod
    def _smart_targets(rule: Rule, smart: SmartShow) -> list[tuple[MediaItem, dict]]:
        """Items the analysis clears for deletion, at the rule's granularity."""
        analysis = smart.analysis
        if rule.target_type == TargetType.EPISODES.value:
            return [
                (smart.episodes[v.episode.item_id], v.to_dict())
                for v in analysis.candidates
                if v.episode.item_id in smart.episodes
            ]

        def all_candidates(items: list[MediaItem]) -> bool:
            verdicts = [analysis.verdict_for(ep.id) for ep in items]
            verdicts = [v for v in verdicts if v is not None]
            return bool(verdicts) and all(v.safe_to_delete for v in verdicts)

        if rule.target_type == TargetType.SEASONS.value:
            targets = []
            for season in smart.seasons:
                if all_candidates(smart.episodes_of_season(season)):
                    targets.append((season, {"season_cleared": True, "summary": analysis.summary()}))
            return targets

        if all_candidates(list(smart.episodes.values())):
            return [(smart.show, {"show_cleared": True, "summary": analysis.summary()})]
        return []

    async def _evaluate_smart(self, rule: Rule, dry_run: bool) -> list[RuleMatch]:
        options = SmartOptions.from_rule(rule, self.settings)
        conditions = rule.get_conditions()
        libraries = self._target_libraries(rule, await self._call(self.media.get_libraries))
        matches = []
        now = self.clock()

        for library in libraries:
            shows = await self._call(self.media.get_library_contents, library.id)
            for entry in shows:
                try:
                    show = await self._call(self.media.get_item_metadata, entry.id)
                    smart = await self.analyze_show(show, options, now)

                    for item, smart_details in self._smart_targets(rule, smart):
                        context = await self.context_builder.build(item, rule.target_type)
                        context.smart_analysis = smart_details
                        if self.guard.is_excluded(item, context):
                            continue
                        if not self.evaluator.evaluate(conditions, item, context):
                            continue
                        matches.append(RuleMatch(
                            item=item,
                            context=context,
                            library=library.title,
                            show=show.title,
                            smart_mode=True,
                            subject=show if item is not show else None,
                        ))

                    if options.proactive_redownload and not dry_run:
                        await self._proactive_redownload(rule, smart)
                except Exception as e:
                    logger.error(f"[SMART] Error evaluating show '{entry.title}' with smart mode: {e}")
        return matches

    async def _proactive_redownload(self, rule: Rule, smart: SmartShow, dry_run: bool = False,
                                    emergency_window: Optional[timedelta] = None) -> list[dict]:
        """
        Monitor and search episodes a viewer will reach soon but that have no
        file. Returns one entry per missing episode, most urgent first; with
        dry_run nothing is triggered.
        """
        if self.orchestrator is None:
            return []
        flagged = redownload_plan(smart.analysis)
        if not flagged:
            return []

        record = await self.context_builder.resolve_orchestrator(smart.show)
        if record is None:
            return []

        now = self.clock()
        results = []
        episodes = None
        for verdict in flagged:
            ep = verdict.episode
            if await self._call(self.orchestrator.episode_has_file, record.id, ep.season_number, ep.episode_number):
                continue
            if episodes is None:
                episodes = await self._call(self.orchestrator.get_episodes, record.id)
            target = orchestrator_episode_for(episodes, ep.season_number, ep.episode_number)
            if target is None:
                continue

            title = f"{smart.show.title} S{ep.season_number:02d}E{ep.episode_number:02d}"
            emergency = (
                emergency_window is not None
                and verdict.redownload_by is not None
                and verdict.redownload_by <= now + emergency_window
            )
            results.append({
                "title": title,
                "item_id": ep.item_id,
                "redownload_by": verdict.redownload_by.isoformat() if verdict.redownload_by else None,
                "emergency": emergency,
                "triggered": not dry_run,
            })
            if emergency:
                logger.warning(f"[SMART] EMERGENCY: {title} is needed by {verdict.redownload_by.isoformat()}")
            if dry_run:
                logger.info(f"[SMART] [DRY RUN] Would trigger redownload of {title}")
                continue

            await self._call(self.orchestrator.monitor_episode, target.id, True)
            await self._call(self.orchestrator.search_episode, target.id)
            logger.info(f"[SMART] Triggered proactive redownload of {title}")
            journal.emit(
                "smart", "redownload", title, "Triggered proactive re-download",
                entity_id=ep.item_id,
                details={
                    "rule_id": rule.id,
                    "emergency": emergency,
                    "redownload_by": verdict.redownload_by.isoformat() if verdict.redownload_by else None,
                    "users_approaching": verdict.users_approaching,
                },
            )

        triggered = sum(1 for r in results if r["triggered"])
        if triggered:
            journal.increment_daily(requests_count=triggered)
        return results

    async def run_redownload_pass(self, dry_run: Optional[bool] = None) -> dict:
        """
        Scheduled redownload check over the shows of every smart rule that
        has proactive redownload on.

        Each show is analyzed once per pass, with the options of the first
        (highest priority) rule covering it. Episodes needed within
        smart_emergency_buffer_hours are flagged as emergencies and listed
        first.
        """
        if dry_run is None:
            dry_run = self.settings.dry_run
        now = self.clock()
        window = timedelta(hours=self.settings.smart_emergency_buffer_hours)
        self.context_builder.reset_pass_cache()

        seen: set[str] = set()
        results = []
        errors = []
        for rule in self.rules.list_active():
            if not is_smart_rule(rule):
                continue
            options = SmartOptions.from_rule(rule, self.settings)
            if not options.proactive_redownload:
                continue
            libraries = self._target_libraries(rule, await self._call(self.media.get_libraries))
            for library in libraries:
                for entry in await self._call(self.media.get_library_contents, library.id):
                    if entry.id in seen:
                        continue
                    seen.add(entry.id)
                    try:
                        show = await self._call(self.media.get_item_metadata, entry.id)
                        smart = await self.analyze_show(show, options, now)
                        results.extend(await self._proactive_redownload(rule, smart, dry_run, window))
                    except Exception as e:
                        logger.error(f"[SMART] Redownload check failed for '{entry.title}': {e}")
                        errors.append({"show": entry.title, "error": str(e)})

        results.sort(key=lambda r: (not r["emergency"], r["redownload_by"] or ""))
        emergencies = sum(1 for r in results if r["emergency"])
        logger.info(
            f"[SMART] Redownload pass checked {len(seen)} shows: {len(results)} missing episodes, "
            f"{emergencies} emergencies (dry_run={dry_run})"
        )
        return {
            "dry_run": dry_run,
            "shows_checked": len(seen),
            "missing": len(results),
            "triggered": sum(1 for r in results if r["triggered"]),
            "emergencies": emergencies,
            "episodes": results,
            "errors": errors,
        }

    async def is_smart_candidate(self, rule: Rule, item: MediaItem) -> bool:
        """Recompute a smart rule's verdict for one item against fresh history."""
        show_id = item.show_id if item.type != "show" else item.id
        if not show_id:
            return False
        show = item if item.type == "show" else await self._call(self.media.get_item_metadata, show_id)
        smart = await self.analyze_show(show, SmartOptions.from_rule(rule, self.settings))
        return any(target.id == item.id for target, _ in self._smart_targets(rule, smart))

    async def get_redownload_plan(self, show_id: str, rule_id: Optional[int] = None) -> dict:
        """Episodes of a show that viewers will reach soon, most urgent first."""
        rule = self.rules.get(rule_id) if rule_id is not None else None
        options = SmartOptions.from_rule(rule, self.settings)
        show = await self._call(self.media.get_item_metadata, show_id)
        smart = await self.analyze_show(show, options)
        plan = redownload_plan(smart.analysis)
        return {
            "show_id": show.id,
            "show_title": show.title,
            "protection_buffer": smart.analysis.protection_buffer,
            "episodes": [v.to_dict() for v in plan],
        }


# =============================================================================
# Singleton Instance
# =============================================================================

_engine_instance: Optional[RulesEngine] = None


def get_rules_engine() -> Optional[RulesEngine]:
    """Get the rules engine instance."""
    return _engine_instance


def set_rules_engine(engine: Optional[RulesEngine]):
    """Set the rules engine instance."""
    global _engine_instance
    _engine_instance = engine


def init_rules_engine(media: MediaLibraryAdapter,
                      orchestrator: Optional[DownloadOrchestratorAdapter] = None,
                      settings: Optional[MediarrSettings] = None) -> RulesEngine:
    """Initialize the rules engine with the configured adapters."""
    engine = RulesEngine(media, orchestrator, settings=settings)
    set_rules_engine(engine)
    return engine

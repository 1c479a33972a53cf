import logging
import threading
import time
from typing import Any, Callable, Iterable

from core import settings

from .bot_detection import AccessResult, BotDetectionMonitor
from .errors import AdaptiveScraperError, NavigationError, PageTimeoutError, ValidationError, classify_error
from .honeypots import HoneypotDetector
from .items import EntityItem
from .learning_store import LearningStore
from .models import (
    EntityExtraction,
    ErrorClass,
    ExtractionContext,
    ExtractionResult,
    FieldOutcome,
    FieldStatus,
    SessionStatus,
    Stage,
)
from .page import Page
from .pipelines import EntityPipeline
from .retry import BackoffTracker, RetryPolicy, run_with_timeout
from .selector_discovery import SelectorDiscovery
from .strategies import AttemptOutcome, SelectorStrategy, Strategy, strategy_from_key
from .urls import context_for, domain_of, normalize_url
from .validators import quality_contribution, validate_field

logger = logging.getLogger(__name__)

STAGES = (Stage.TRY_LEARNED, Stage.TRY_SEED, Stage.TRY_DISCOVERED)
STAGE_SOURCES = {Stage.TRY_LEARNED: "learned", Stage.TRY_SEED: "seed", Stage.TRY_DISCOVERED: "discovered"}

# Most telling error class first when summarizing an exhausted field
ERROR_PRIORITY = (
    ErrorClass.BOT_DETECTION,
    ErrorClass.NAVIGATION,
    ErrorClass.TIMEOUT,
    ErrorClass.UNKNOWN,
    ErrorClass.VALIDATION,
    ErrorClass.ELEMENT_NOT_FOUND,
)
NOT_FOUND_CLASSES = (ErrorClass.ELEMENT_NOT_FOUND, ErrorClass.VALIDATION)


class AdaptiveExtractor:
    """Adaptive entity extractor.

    Extracts name, description, image and link from an entity page through a
    chain of strategies that learns which selectors work per site template.

    Features:
    - Learned strategies first, then seed configuration, then fresh discovery
    - Every attempt is recorded, so rankings follow site changes
    - Bounded retries with backoff driven by recent block density
    - Block detection and remediation before extraction starts; a page that
      turns into a block page mid-session ends the session as blocked
    - Honeypot traps are learned per host and never used as sources
    """

    def __init__(
        self: "AdaptiveExtractor",
        store: LearningStore | None = None,
        discovery: SelectorDiscovery | None = None,
        monitor: BotDetectionMonitor | None = None,
        honeypots: HoneypotDetector | None = None,
        backoff: BackoffTracker | None = None,
        retry_policy: RetryPolicy | None = None,
        seed_strategies: dict[str, list[str]] | None = None,
        attempt_timeout: float | None = settings.ATTEMPT_TIMEOUT,
        navigation_timeout: float | None = settings.NAVIGATION_TIMEOUT,
        page_ready_timeout: float = settings.PAGE_READY_TIMEOUT,
        proactive_discovery: bool = True,
        sleep: Callable[[float], None] = time.sleep,
        cancel_event: threading.Event | None = None,
    ) -> None:
        """Initialize the AdaptiveExtractor.

        Args:
            store: Learning store shared between sessions
            discovery: Selector discovery engine
            monitor: Bot-detection monitor
            honeypots: Trap detector, sharing the learning store when omitted
            backoff: Per-domain block tracker, shared with the monitor
            retry_policy: Retry policy for navigation and fields
            seed_strategies: Seed strategy keys per field
            attempt_timeout: Timeout for a single strategy attempt
            navigation_timeout: Timeout for a single navigation
            page_ready_timeout: Time to wait for the page body after navigation
            proactive_discovery: Refresh discovered candidates after a success when due
            sleep: Sleep function for backoff waits
            cancel_event: Event checked between fields, stages and attempts
        """
        self.store = store or LearningStore()
        self.discovery = discovery or SelectorDiscovery()
        self.backoff = backoff or (monitor.backoff if monitor else BackoffTracker())
        self.monitor = monitor or BotDetectionMonitor(backoff=self.backoff, sleep=sleep)
        self.honeypots = honeypots or HoneypotDetector(self.store, evaluate_timeout=self.monitor.evaluate_timeout)
        self.retry_policy = retry_policy or RetryPolicy(self.backoff, sleep=sleep)
        self.seed_strategies = seed_strategies if seed_strategies is not None else settings.SEED_STRATEGIES
        self.attempt_timeout = attempt_timeout
        self.navigation_timeout = navigation_timeout
        self.page_ready_timeout = page_ready_timeout
        self.proactive_discovery = proactive_discovery
        self.sleep = sleep
        self.cancel_event = cancel_event or threading.Event()
        self.pipeline = EntityPipeline()

    def cancel(self: "AdaptiveExtractor") -> None:
        """Stop at the next field, stage or attempt boundary."""
        self.cancel_event.set()

    @property
    def cancelled(self: "AdaptiveExtractor") -> bool:
        return self.cancel_event.is_set()

    def extract_entity(
        self: "AdaptiveExtractor",
        page: Page,
        url: str,
        fields: Iterable[str] | None = None,
    ) -> EntityExtraction:
        """Extract an entity from a page.

        Args:
            page: Page collaborator
            url: Entity URL
            fields: Fields to extract, all entity fields when None

        Returns:
            EntityExtraction with per-field outcomes, quality score and strategy trace.
            Field failures never abort the session; navigation failure and a
            persistent block, before or during extraction, surface as terminal
            statuses with diagnostics.
        """
        fields = list(fields or settings.ENTITY_FIELDS)
        domain = domain_of(url)
        diagnostics: dict[str, Any] = {"domain": domain}

        if self.cancelled:
            return EntityExtraction(url=url, status=SessionStatus.CANCELLED, diagnostics=diagnostics)

        if self.backoff.is_problematic(domain):
            delay = self.backoff.recommended_delay(domain)
            logger.warning(f"{domain} blocked us repeatedly, waiting {delay}s before navigating")
            diagnostics["problematic_domain_delay"] = delay
            self.sleep(delay)

        if page.url != url:
            navigation_attempts = []
            try:
                self.retry_policy.call(
                    self._navigate,
                    page,
                    url,
                    navigation_attempts,
                    domain=domain,
                    max_attempts=settings.NAVIGATION_RETRY_ATTEMPTS,
                    cancel_event=self.cancel_event,
                )
            except (NavigationError, PageTimeoutError) as e:
                logger.error(f"Navigation to {url} failed after {len(navigation_attempts)} attempts: {e}")
                diagnostics.update(
                    {"error": str(e), "error_class": classify_error(e).value, "attempts": len(navigation_attempts)}
                )
                return EntityExtraction(url=url, status=SessionStatus.NAVIGATION_FAILED, diagnostics=diagnostics)

        try:
            access = self.monitor.ensure_accessible(page, url)
        except PageTimeoutError as e:
            logger.error(f"Could not assess {url}: {e}")
            diagnostics.update({"error": str(e), "error_class": ErrorClass.TIMEOUT.value})
            return EntityExtraction(url=url, status=SessionStatus.NAVIGATION_FAILED, diagnostics=diagnostics)

        if access.block_event is not None:
            diagnostics["block_signature"] = access.block_event.signature
            diagnostics["remediation_steps"] = access.steps
        if not access.accessible:
            diagnostics.update(access.diagnostics)
            logger.warning(f"Giving up on {url}: blocked ({access.diagnostics.get('signature')})")
            return EntityExtraction(url=url, status=SessionStatus.BLOCKED, diagnostics=diagnostics)

        traps = self.honeypots.scan(page, url)
        diagnostics["traps"] = len(traps)

        entity_url = normalize_url(url)
        outcomes: dict[str, FieldOutcome] = {}
        for field in fields:
            if self.cancelled:
                outcomes[field] = FieldOutcome(field=field, status=FieldStatus.CANCELLED)
                continue
            context = context_for(entity_url, field)
            outcome = self.extract_field(page, context, self.seed_strategies.get(field, []), traps=traps)
            outcomes[field] = outcome
            if outcome.blocked:
                diagnostics.update(outcome.block_diagnostics)
                logger.warning(f"Giving up on {url}: blocked while extracting {field} ({diagnostics.get('signature')})")
                return self._build_extraction(url, outcomes, diagnostics, status=SessionStatus.BLOCKED)

        return self._build_extraction(url, outcomes, diagnostics)

    def _navigate(self: "AdaptiveExtractor", page: Page, url: str, attempts: list[float]) -> None:
        attempts.append(time.monotonic())
        run_with_timeout(page.navigate, self.navigation_timeout, url, timeout=self.navigation_timeout)
        page.wait_for_condition(lambda p: bool(p.query_visible_elements("body")), self.page_ready_timeout)

    def _build_extraction(
        self: "AdaptiveExtractor",
        url: str,
        outcomes: dict[str, FieldOutcome],
        diagnostics: dict[str, Any],
        status: SessionStatus | None = None,
    ) -> EntityExtraction:
        quality_score = sum(o.result.quality_contribution for o in outcomes.values() if o.succeeded)
        trace = [entry for outcome in outcomes.values() for entry in outcome.trace]
        if status is None:
            cancelled = any(o.status == FieldStatus.CANCELLED for o in outcomes.values())
            status = SessionStatus.CANCELLED if cancelled else SessionStatus.OK

        item = EntityItem(url=url, quality_score=round(quality_score, 3))
        for field, outcome in outcomes.items():
            if outcome.succeeded and field in EntityItem.fields:
                item[field] = outcome.result.value
        item = self.pipeline.process_item(item)

        diagnostics["fields_found"] = sum(1 for o in outcomes.values() if o.succeeded)
        diagnostics["learning_degraded"] = self.store.degraded
        logger.info(
            f"Extracted {diagnostics['fields_found']}/{len(outcomes)} fields from {url} "
            f"(quality {quality_score:.2f}, status {status.value})"
        )
        return EntityExtraction(
            url=url,
            status=status,
            fields=outcomes,
            quality_score=round(quality_score, 3),
            strategy_trace=trace,
            diagnostics=diagnostics,
            item=item,
        )

    def extract_field(
        self: "AdaptiveExtractor",
        page: Page,
        context: ExtractionContext,
        seed_strategies: Iterable[str | Strategy],
        content_hint: str | None = None,
        traps: Iterable[str] | None = None,
    ) -> FieldOutcome:
        """Extract one field through the learned, seed and discovered stages.

        The first validated value wins. When every stage is exhausted because of
        a retryable failure (timeout, navigation, bot detection) the whole
        process is retried with backoff. A page that stays blocked after
        remediation is not retried; the outcome carries the block diagnostics.

        Args:
            page: Page collaborator
            context: Learning context for the field
            seed_strategies: Seed strategy keys (or strategies), in order
            content_hint: Expected content, used to bias discovery
            traps: Trap selectors to stay away from, the host's known traps when None

        Returns:
            FieldOutcome with status success, not_found, failed or cancelled
        """
        seeds = list(seed_strategies)
        avoid = set(self.honeypots.known_traps(page.url) if traps is None else traps)
        rounds: list[FieldOutcome] = []

        def run_once() -> FieldOutcome:
            outcome = self._extract_field_once(page, context, seeds, content_hint, avoid, len(rounds) + 1)
            rounds.append(outcome)
            return outcome

        def retry_class(outcome: FieldOutcome) -> ErrorClass | None:
            if outcome.status != FieldStatus.FAILED or outcome.blocked:
                return None
            return outcome.error_class

        final = self.retry_policy.call(
            run_once,
            domain=domain_of(page.url),
            result_error_class=retry_class,
            cancel_event=self.cancel_event,
        )
        final.attempts = sum(o.attempts for o in rounds)
        final.trace = [entry for o in rounds for entry in o.trace]
        return final

    def _extract_field_once(
        self: "AdaptiveExtractor",
        page: Page,
        context: ExtractionContext,
        seeds: list[str | Strategy],
        content_hint: str | None,
        traps: set[str],
        round_number: int,
    ) -> FieldOutcome:
        """One pass of the TRY_LEARNED -> TRY_SEED -> TRY_DISCOVERED -> EXHAUSTED machine."""
        field = context.field_type
        tried: set[str] = set()
        errors: list[ErrorClass] = []
        trace: list[dict[str, Any]] = []
        checked_after: int | None = None

        for stage in STAGES:
            if self.cancelled:
                return FieldOutcome(field=field, status=FieldStatus.CANCELLED, attempts=len(tried), trace=trace)

            if stage == Stage.TRY_DISCOVERED:
                # never mine selectors from a block page
                access = self._check_access(page, errors)
                checked_after = len(tried)
                if access is not None and not access.accessible:
                    return self._blocked_outcome(field, access, tried, trace)

            candidates = self._stage_candidates(stage, page, context, seeds, content_hint, traps, errors)
            logger.debug(f"{context.key}: {stage.value} stage with {len(candidates)} candidates")

            for strategy in candidates:
                if strategy.key in tried:
                    continue
                if self.cancelled:
                    return FieldOutcome(field=field, status=FieldStatus.CANCELLED, attempts=len(tried), trace=trace)
                tried.add(strategy.key)

                value, score, error_class = self._attempt(strategy, page, field)
                self.store.record_outcome(
                    context, strategy.key, error_class is None, error_class, source=STAGE_SOURCES[stage]
                )
                trace.append(
                    {
                        "field": field,
                        "round": round_number,
                        "stage": stage.value,
                        "strategy": strategy.key,
                        "success": error_class is None,
                        "error_class": error_class.value if error_class else None,
                    }
                )
                if error_class is not None:
                    errors.append(error_class)
                    continue

                result = ExtractionResult(
                    field=field,
                    value=value,
                    strategy_used=strategy.key,
                    stage=stage,
                    quality_contribution=quality_contribution(field, score),
                )
                logger.debug(f"{context.key}: {strategy.key} won in {stage.value} stage")
                if self.proactive_discovery and stage != Stage.TRY_DISCOVERED:
                    self._refresh_discovery(page, context, content_hint, traps)
                return FieldOutcome(field=field, status=FieldStatus.SUCCESS, result=result, attempts=len(tried), trace=trace)

        if checked_after != len(tried):
            access = self._check_access(page, errors)
            if access is not None and not access.accessible:
                return self._blocked_outcome(field, access, tried, trace)

        error_class = next((e for e in ERROR_PRIORITY if e in errors), None)
        status = FieldStatus.NOT_FOUND if error_class in NOT_FOUND_CLASSES or error_class is None else FieldStatus.FAILED
        logger.info(f"{context.key}: {Stage.EXHAUSTED.value} after {len(tried)} attempts ({status.value})")
        return FieldOutcome(field=field, status=status, attempts=len(tried), error_class=error_class, trace=trace)

    def _check_access(self: "AdaptiveExtractor", page: Page, errors: list[ErrorClass]) -> AccessResult | None:
        """Re-assess the page mid-session, remediating when it got blocked.

        A block that remediation cleared counts as a bot_detection error, so the
        field is retried with backoff if nothing else works.

        Returns:
            The access result, or None when the assessment timed out
        """
        try:
            access = self.monitor.ensure_accessible(page, page.url)
        except PageTimeoutError as e:
            logger.warning(f"Could not assess {page.url}: {e}")
            errors.append(ErrorClass.TIMEOUT)
            return None
        if access.block_event is not None:
            errors.append(ErrorClass.BOT_DETECTION)
        return access

    def _blocked_outcome(
        self: "AdaptiveExtractor",
        field: str,
        access: AccessResult,
        tried: set[str],
        trace: list[dict[str, Any]],
    ) -> FieldOutcome:
        logger.warning(f"Still blocked ({access.diagnostics.get('signature')}) while extracting {field}")
        return FieldOutcome(
            field=field,
            status=FieldStatus.FAILED,
            attempts=len(tried),
            error_class=ErrorClass.BOT_DETECTION,
            trace=trace,
            block_diagnostics=dict(access.diagnostics),
        )

    def _stage_candidates(
        self: "AdaptiveExtractor",
        stage: Stage,
        page: Page,
        context: ExtractionContext,
        seeds: list[str | Strategy],
        content_hint: str | None,
        traps: set[str],
        errors: list[ErrorClass],
    ) -> list[Strategy]:
        if stage == Stage.TRY_LEARNED:
            keys: list[str | Strategy] = [c.key for c in self.store.get_learned_candidates(context)]
        elif stage == Stage.TRY_SEED:
            keys = seeds
        else:
            keys = self._discover(page, context, content_hint, traps, errors)

        strategies = []
        for key in keys:
            if isinstance(key, Strategy):
                strategy = key
            else:
                try:
                    strategy = strategy_from_key(key)
                except ValueError as e:
                    logger.warning(f"Skipping strategy {key!r}: {e}")
                    continue
            if isinstance(strategy, SelectorStrategy) and strategy.css in traps:
                logger.info(f"Skipping strategy {strategy.key}: selects a honeypot trap")
                continue
            strategies.append(strategy)
        return strategies

    def _attempt(
        self: "AdaptiveExtractor",
        strategy: Strategy,
        page: Page,
        field: str,
    ) -> tuple[str | None, float, ErrorClass | None]:
        """Execute and validate one strategy.

        Returns:
            (value, validation score, None) on success, or (None, 0.0, error class)
        """
        try:
            outcome = run_with_timeout(strategy.attempt, self.attempt_timeout, page)
        except PageTimeoutError as e:
            outcome = AttemptOutcome.failure(e)
        except Exception as e:
            logger.exception(f"Strategy {strategy.key} crashed: {e}")
            outcome = AttemptOutcome.failure(e)

        if not outcome.succeeded:
            return None, 0.0, outcome.error_class or ErrorClass.UNKNOWN
        try:
            value, score = validate_field(field, outcome.value, base_url=page.url, visible=outcome.visible)
        except ValidationError as e:
            logger.debug(f"{strategy.key} value rejected: {e}")
            return None, 0.0, e.error_class
        return value, score, None

    def _discover(
        self: "AdaptiveExtractor",
        page: Page,
        context: ExtractionContext,
        content_hint: str | None,
        traps: set[str],
        errors: list[ErrorClass],
    ) -> list[str]:
        try:
            keys = run_with_timeout(
                self.discovery.discover,
                self.page_ready_timeout,
                page,
                context.field_type,
                content_hint,
                avoid=traps,
            )
        except AdaptiveScraperError as e:
            logger.warning(f"Discovery failed for {context.key}: {e}")
            errors.append(e.error_class)
            return []
        self.store.register_candidates(context, keys, source="discovered")
        self.store.mark_discovery(context)
        return keys

    def _refresh_discovery(
        self: "AdaptiveExtractor",
        page: Page,
        context: ExtractionContext,
        content_hint: str | None,
        traps: set[str],
    ) -> None:
        """Register fresh discovered candidates when the context is due for a refresh."""
        if not self.store.discovery_due(context):
            return
        logger.debug(f"Refreshing discovered candidates for {context.key}")
        self._discover(page, context, content_hint, traps, [])

    def extract_with_details(self: "AdaptiveExtractor", page: Page, url: str) -> dict[str, Any]:
        """Extract an entity with detailed debugging information.

        Useful for understanding how the extractor ranks and discovers strategies.

        Returns:
            {
                'entity': EntityExtraction,
                'candidates': {field: [ranked candidate summaries]},
                'discovery_info': {field: discovery details},
            }
        """
        entity = self.extract_entity(page, url)
        entity_url = normalize_url(url)
        candidates = {}
        discovery_info = {}
        for field in entity.fields:
            context = context_for(entity_url, field)
            candidates[field] = [
                {
                    "key": c.key,
                    "score": round(self.store.score(c), 3),
                    "success_rate": round(c.success_rate, 3),
                    "attempts": c.attempts,
                    "priority_tier": c.priority_tier.value,
                    "source": c.source,
                }
                for c in self.store.get_ranked_candidates(context, limit=settings.MAX_RANKED_CANDIDATES)
            ]
            if entity.status == SessionStatus.OK:
                discovery_info[field] = self.discovery.get_discovery_info(page, field)
        return {"entity": entity, "candidates": candidates, "discovery_info": discovery_info}

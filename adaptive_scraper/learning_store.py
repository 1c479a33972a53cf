"""
Strategy registry and learning store.

Tracks success and failure counters per (context, candidate) and ranks
candidates for the extractor. Ranking is frequency based: a smoothed success
rate weighted by recency of the last success and by priority tier.

Each context is one document in the backing ``KeyValueStore`` under
``ctx:<site template>|<field>``. All mutations go through ``update`` so
concurrent sessions merge counter increments instead of overwriting each
other.
"""

import logging
import math
import threading
import time
from collections import deque
from typing import Any, Callable, Iterable

from core import settings

from .errors import PersistenceError
from .models import AttemptRecord, Candidate, ErrorClass, ExtractionContext, PriorityTier
from .persistence import KeyValueStore, MemoryStore

logger = logging.getLogger(__name__)

CONTEXT_PREFIX = "ctx:"
SECONDS_PER_DAY = 24 * 60 * 60


def _empty_document(context: ExtractionContext) -> dict[str, Any]:
    return {
        "context": context.key,
        "candidates": {},
        "next_sequence": 0,
        "folded": [],
        "error_counts": {},
        "last_discovery": None,
        "aggregates": {},
    }


class LearningStore:
    """Durable mapping of (context, candidate) to outcome counters.

    Persistence failures never propagate to callers. Outcomes that could not be
    written are queued and retried on the next store call, and the store
    reports ``degraded`` until the queue drains.
    """

    def __init__(
        self: "LearningStore",
        backend: KeyValueStore | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the learning store.

        Args:
            backend: Persistence collaborator, in-memory when omitted
            clock: Time source returning epoch seconds
        """
        self.backend = backend if backend is not None else MemoryStore()
        self.clock = clock
        self._pending: deque[tuple[AttemptRecord, str]] = deque(maxlen=settings.MAX_PENDING_OUTCOMES)
        self._pending_lock = threading.Lock()
        self.degraded = False

    # -- reads ---------------------------------------------------------------

    def get_candidates(self: "LearningStore", context: ExtractionContext) -> list[Candidate]:
        """All candidates stored for a context, in discovery order."""
        document = self._load(context)
        if document is None:
            return []
        candidates = [Candidate.from_dict(data) for data in document["candidates"].values()]
        candidates.sort(key=lambda c: c.sequence)
        return candidates

    def get_ranked_candidates(
        self: "LearningStore",
        context: ExtractionContext,
        limit: int | None = None,
        now: float | None = None,
    ) -> list[Candidate]:
        """Return candidates ordered by ranking score, best first.

        Args:
            context: Learning context
            limit: Maximum number of candidates, all when None
            now: Reference time for recency weighting

        Returns:
            Candidates sorted by score, ties broken by discovery order
        """
        now = self.clock() if now is None else now
        candidates = self.get_candidates(context)
        candidates.sort(key=lambda c: (-self.score(c, now), c.sequence))
        return candidates if limit is None else candidates[:limit]

    def get_learned_candidates(
        self: "LearningStore",
        context: ExtractionContext,
        limit: int = settings.MAX_RANKED_CANDIDATES,
        now: float | None = None,
    ) -> list[Candidate]:
        """Ranked candidates that have succeeded at least once or are still untried."""
        ranked = self.get_ranked_candidates(context, now=now)
        learned = [c for c in ranked if c.success_count > 0 or c.attempts == 0]
        return learned[:limit]

    def score(self: "LearningStore", candidate: Candidate, now: float | None = None) -> float:
        """Ranking score: tier multiplier x recency weight x smoothed success rate."""
        now = self.clock() if now is None else now
        smoothed_rate = (candidate.success_count + settings.PRIOR_SUCCESS_RATE * settings.PRIOR_WEIGHT) / (
            candidate.attempts + settings.PRIOR_WEIGHT
        )
        if candidate.last_success is None:
            recency = settings.RECENCY_FLOOR
        else:
            age_days = max(0.0, now - candidate.last_success) / SECONDS_PER_DAY
            decay = math.pow(0.5, age_days / settings.RECENCY_HALF_LIFE_DAYS)
            recency = settings.RECENCY_FLOOR + (1.0 - settings.RECENCY_FLOOR) * decay
        tier = settings.TIER_MULTIPLIERS.get(candidate.priority_tier.value, 1.0)
        return tier * recency * smoothed_rate

    def contexts(self: "LearningStore") -> list[ExtractionContext]:
        """All contexts with a stored document."""
        self._flush_pending()
        try:
            keys = self.backend.keys(CONTEXT_PREFIX)
        except PersistenceError as e:
            self._enter_degraded("list contexts", e)
            return []
        self._mark_healthy()
        return [ExtractionContext.from_key(key[len(CONTEXT_PREFIX) :]) for key in keys]

    def get_context_stats(self: "LearningStore", context: ExtractionContext) -> dict[str, Any]:
        """Stored aggregates and error-class counters for a context."""
        document = self._load(context)
        if document is None:
            return {}
        return {"aggregates": document.get("aggregates", {}), "error_counts": document.get("error_counts", {})}

    # -- outcomes ------------------------------------------------------------

    def record_outcome(
        self: "LearningStore",
        context: ExtractionContext,
        candidate_key: str,
        success: bool,
        error_class: ErrorClass | None = None,
        now: float | None = None,
        source: str = "learned",
    ) -> AttemptRecord:
        """Record one attempt of a candidate, creating the candidate if absent.

        Returns:
            The AttemptRecord that was folded (or queued when persistence failed)
        """
        record = AttemptRecord(
            context=context,
            candidate_key=candidate_key,
            success=success,
            timestamp=self.clock() if now is None else now,
            error_class=error_class,
        )
        self.fold(record, source=source)
        return record

    def fold(self: "LearningStore", record: AttemptRecord, source: str = "learned") -> bool:
        """Fold an attempt into its candidate's counters exactly once.

        Returns:
            True if the record changed the store, False if it was already folded
            or had to be queued
        """
        self._flush_pending()
        try:
            applied = self._apply(record, source)
        except PersistenceError as e:
            with self._pending_lock:
                self._pending.append((record, source))
            self._enter_degraded(f"record outcome for {record.candidate_key}", e)
            return False
        self._mark_healthy()
        return applied

    def _apply(self: "LearningStore", record: AttemptRecord, source: str = "learned") -> bool:
        applied = False

        def merge(document: dict[str, Any] | None) -> dict[str, Any]:
            nonlocal applied
            document = document or _empty_document(record.context)
            if record.attempt_id in document["folded"]:
                applied = False
                return document

            candidates = document["candidates"]
            data = candidates.get(record.candidate_key)
            if data is None:
                candidate = Candidate(
                    key=record.candidate_key,
                    discovered_at=record.timestamp,
                    sequence=document["next_sequence"],
                    source=source,
                )
                document["next_sequence"] += 1
            else:
                candidate = Candidate.from_dict(data)

            if record.success:
                candidate.success_count += 1
                candidate.last_success = max(candidate.last_success or 0.0, record.timestamp)
            else:
                candidate.failure_count += 1
                candidate.last_failure = max(candidate.last_failure or 0.0, record.timestamp)
                if record.error_class is not None:
                    error = ErrorClass(record.error_class).value
                    candidate.error_counts[error] = candidate.error_counts.get(error, 0) + 1
                    document["error_counts"][error] = document["error_counts"].get(error, 0) + 1

            candidates[record.candidate_key] = candidate.to_dict()
            document["folded"] = (document["folded"] + [record.attempt_id])[-settings.FOLDED_ATTEMPT_CACHE_SIZE :]
            applied = True
            return document

        self.backend.update(self._key(record.context), merge)
        if applied:
            logger.debug(
                f"Recorded {'success' if record.success else 'failure'} for {record.candidate_key} "
                f"in {record.context.key}"
            )
        return applied

    def register_candidates(
        self: "LearningStore",
        context: ExtractionContext,
        keys: Iterable[str],
        source: str = "discovered",
        now: float | None = None,
    ) -> list[str]:
        """Create zero-attempt candidates, leaving existing ones untouched.

        Returns:
            Keys that were newly created
        """
        now = self.clock() if now is None else now
        keys = list(keys)
        created: list[str] = []

        def add(document: dict[str, Any] | None) -> dict[str, Any]:
            created.clear()
            document = document or _empty_document(context)
            candidates = document["candidates"]
            for key in keys:
                if key in candidates:
                    continue
                if len(candidates) >= settings.MAX_CANDIDATES_PER_CONTEXT:
                    logger.debug(f"Context {context.key} is full, skipping {key}")
                    break
                candidate = Candidate(key=key, discovered_at=now, sequence=document["next_sequence"], source=source)
                document["next_sequence"] += 1
                candidates[key] = candidate.to_dict()
                created.append(key)
            return document

        self._mutate(context, add, "register candidates")
        return created

    # -- discovery cadence ---------------------------------------------------

    def discovery_due(self: "LearningStore", context: ExtractionContext, now: float | None = None) -> bool:
        """Whether selector discovery should refresh this context.

        Due when discovery never ran, when the last run is older than the
        refresh interval, or when more than half of the candidates failed
        recently with a low success rate.
        """
        now = self.clock() if now is None else now
        document = self._load(context)
        if document is None or document.get("last_discovery") is None:
            return True
        if now - document["last_discovery"] > settings.DISCOVERY_REFRESH_HOURS * 3600:
            return True

        candidates = [Candidate.from_dict(data) for data in document["candidates"].values()]
        failing = [
            c
            for c in candidates
            if c.last_failure is not None
            and now - c.last_failure < settings.REDISCOVERY_FAILURE_WINDOW_SECONDS
            and c.success_rate < settings.REDISCOVERY_LOW_SUCCESS_RATE
        ]
        return len(failing) > len(candidates) * 0.5

    def mark_discovery(self: "LearningStore", context: ExtractionContext, now: float | None = None) -> None:
        now = self.clock() if now is None else now

        def mark(document: dict[str, Any] | None) -> dict[str, Any]:
            document = document or _empty_document(context)
            document["last_discovery"] = now
            return document

        self._mutate(context, mark, "mark discovery")

    # -- maintenance ---------------------------------------------------------

    def prune(self: "LearningStore", context: ExtractionContext, now: float | None = None) -> list[str]:
        """Remove candidates that keep failing and have gone quiet.

        A candidate is removed when it has enough samples, a success rate below
        the prune threshold and no activity within the recent window. High
        priority candidates and untried candidates are kept.

        Returns:
            Keys of removed candidates
        """
        now = self.clock() if now is None else now
        removed: list[str] = []

        def drop(document: dict[str, Any] | None) -> dict[str, Any] | None:
            removed.clear()
            if document is None:
                return None
            for key, data in list(document["candidates"].items()):
                if self._should_prune(Candidate.from_dict(data), now):
                    del document["candidates"][key]
                    removed.append(key)
            return document

        self._mutate(context, drop, "prune")
        if removed:
            logger.info(f"Pruned {len(removed)} candidates from {context.key}")
        return removed

    def _should_prune(self: "LearningStore", candidate: Candidate, now: float) -> bool:
        if candidate.attempts < settings.PRUNE_MIN_SAMPLES:
            return False
        if candidate.priority_tier == PriorityTier.HIGH:
            return False
        if candidate.success_rate >= settings.PRUNE_MAX_SUCCESS_RATE:
            return False
        return now - candidate.last_activity > settings.RECENT_ACTIVITY_DAYS * SECONDS_PER_DAY

    def optimize(self: "LearningStore", context: ExtractionContext, now: float | None = None) -> dict[str, list[str]]:
        """Promote reliable candidates, demote unreliable ones, then prune.

        Returns:
            Dictionary with 'promoted', 'demoted' and 'pruned' candidate keys
        """
        promoted: list[str] = []
        demoted: list[str] = []

        def retier(document: dict[str, Any] | None) -> dict[str, Any] | None:
            promoted.clear()
            demoted.clear()
            if document is None:
                return None
            for key, data in document["candidates"].items():
                candidate = Candidate.from_dict(data)
                rate = candidate.success_rate
                if (
                    rate >= settings.PROMOTE_MIN_SUCCESS_RATE
                    and candidate.success_count >= settings.PROMOTE_MIN_SUCCESSES
                    and candidate.priority_tier != PriorityTier.HIGH
                ):
                    data["priority_tier"] = PriorityTier.HIGH.value
                    promoted.append(key)
                elif (
                    rate < settings.DEMOTE_MAX_SUCCESS_RATE
                    and candidate.attempts >= settings.DEMOTE_MIN_SAMPLES
                    and candidate.priority_tier != PriorityTier.LOW
                ):
                    data["priority_tier"] = PriorityTier.LOW.value
                    demoted.append(key)
            return document

        self._mutate(context, retier, "optimize")
        pruned = self.prune(context, now=now)
        return {"promoted": list(promoted), "demoted": list(demoted), "pruned": pruned}

    def cleanup(
        self: "LearningStore",
        context: ExtractionContext,
        retention_days: int = settings.RETENTION_DAYS,
        now: float | None = None,
    ) -> list[str]:
        """Remove candidates inactive past the retention horizon with low lifetime value.

        The context document is dropped once it holds no candidates.

        Returns:
            Keys of removed candidates
        """
        now = self.clock() if now is None else now
        horizon = now - retention_days * SECONDS_PER_DAY
        removed: list[str] = []

        def expire(document: dict[str, Any] | None) -> dict[str, Any] | None:
            removed.clear()
            if document is None:
                return None
            for key, data in list(document["candidates"].items()):
                candidate = Candidate.from_dict(data)
                if candidate.attempts == 0:
                    continue
                if candidate.last_activity < horizon and candidate.success_count <= settings.HIGH_VALUE_SUCCESS_COUNT:
                    del document["candidates"][key]
                    removed.append(key)
            if not document["candidates"]:
                return None
            return document

        self._mutate(context, expire, "cleanup")
        if removed:
            logger.info(f"Removed {len(removed)} expired candidates from {context.key}")
        return removed

    def recompute_aggregates(self: "LearningStore", context: ExtractionContext, now: float | None = None) -> dict[str, Any]:
        """Recompute and store context totals from candidate counters."""
        now = self.clock() if now is None else now
        aggregates: dict[str, Any] = {}

        def recompute(document: dict[str, Any] | None) -> dict[str, Any] | None:
            if document is None:
                return None
            candidates = [Candidate.from_dict(data) for data in document["candidates"].values()]
            successes = sum(c.success_count for c in candidates)
            attempts = sum(c.attempts for c in candidates)
            aggregates.clear()
            aggregates.update(
                {
                    "candidate_count": len(candidates),
                    "total_successes": successes,
                    "total_attempts": attempts,
                    "success_rate": successes / attempts if attempts else 0.0,
                    "updated_at": now,
                }
            )
            document["aggregates"] = dict(aggregates)
            return document

        self._mutate(context, recompute, "recompute aggregates")
        return dict(aggregates)

    # -- auxiliary documents -------------------------------------------------

    def load_document(self: "LearningStore", key: str) -> dict[str, Any] | None:
        """Load any document from the backend, None when missing or unreadable."""
        self._flush_pending()
        try:
            document = self.backend.load(key)
        except PersistenceError as e:
            self._enter_degraded(f"load {key}", e)
            return None
        self._mark_healthy()
        return document

    def update_document(
        self: "LearningStore",
        key: str,
        fn: Callable[[dict[str, Any] | None], dict[str, Any] | None],
        action: str = "update",
    ) -> bool:
        """Atomically rewrite a document.

        Returns:
            False when the backend failed and the change was dropped
        """
        self._flush_pending()
        try:
            self.backend.update(key, fn)
        except PersistenceError as e:
            self._enter_degraded(f"{action} {key}", e)
            return False
        self._mark_healthy()
        return True

    # -- plumbing ------------------------------------------------------------

    def _key(self: "LearningStore", context: ExtractionContext) -> str:
        return f"{CONTEXT_PREFIX}{context.key}"

    def _load(self: "LearningStore", context: ExtractionContext) -> dict[str, Any] | None:
        return self.load_document(self._key(context))

    def _mutate(
        self: "LearningStore",
        context: ExtractionContext,
        fn: Callable[[dict[str, Any] | None], dict[str, Any] | None],
        action: str,
    ) -> bool:
        return self.update_document(self._key(context), fn, action)

    def _enter_degraded(self: "LearningStore", action: str, error: PersistenceError) -> None:
        if not self.degraded:
            logger.warning(f"Learning store degraded, continuing without learning: could not {action}: {error}")
        else:
            logger.debug(f"Learning store still degraded: could not {action}: {error}")
        self.degraded = True

    def _mark_healthy(self: "LearningStore") -> None:
        if self.degraded and not self._pending:
            logger.info("Learning store recovered")
            self.degraded = False

    def _flush_pending(self: "LearningStore") -> None:
        """Retry queued outcomes. Stops at the first failure and keeps the rest queued."""
        with self._pending_lock:
            if not self._pending:
                return
            while self._pending:
                record, source = self._pending[0]
                try:
                    self._apply(record, source)
                except PersistenceError as e:
                    logger.debug(f"Pending outcomes still not writable: {e}")
                    return
                self._pending.popleft()
            logger.info("Pending outcomes written")

    @property
    def pending_count(self: "LearningStore") -> int:
        return len(self._pending)

import logging
import threading
import time
from typing import Any, Callable

from core import settings

from .learning_store import LearningStore
from .models import Candidate

logger = logging.getLogger(__name__)

INSIGHTS_KEY = "meta:insights"


class MaintenanceScheduler:
    """Periodic upkeep of the learning store.

    Each cycle runs, in order:
    1. optimize: promote, demote and prune candidates
    2. cleanup: drop candidates inactive past the retention horizon
    3. recompute: refresh per-context aggregates
    4. insights: build and store a report with recommendations

    A failing step is logged and the next step still runs.
    """

    def __init__(
        self: "MaintenanceScheduler",
        store: LearningStore,
        interval: float = settings.MAINTENANCE_INTERVAL_SECONDS,
        initial_delay: float = settings.MAINTENANCE_INITIAL_DELAY_SECONDS,
        retention_days: int = settings.RETENTION_DAYS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the scheduler.

        Args:
            store: Learning store to maintain
            interval: Seconds between background cycles
            initial_delay: Seconds before the first background cycle
            retention_days: Inactivity horizon for cleanup
            clock: Time source returning epoch seconds
        """
        self.store = store
        self.interval = interval
        self.initial_delay = initial_delay
        self.retention_days = retention_days
        self.clock = clock
        self.last_report: dict[str, Any] | None = None
        self._running = False
        self._guard = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self: "MaintenanceScheduler") -> bool:
        """Whether a cycle is in progress."""
        return self._running

    def run_maintenance_cycle(self: "MaintenanceScheduler", now: float | None = None) -> dict[str, Any]:
        """Run one maintenance cycle.

        Returns:
            The insights report, or {"skipped": True} when a cycle is already running
        """
        with self._guard:
            if self._running:
                logger.info("Maintenance cycle already running, skipping")
                return {"skipped": True}
            self._running = True

        now = self.clock() if now is None else now
        steps: dict[str, str] = {}
        report: dict[str, Any] = {}
        try:
            logger.info("Starting maintenance cycle")
            self._run_step("optimize", steps, self._optimize, now)
            self._run_step("cleanup", steps, self._cleanup, now)
            self._run_step("recompute", steps, self._recompute, now)
            report = self._run_step("insights", steps, self.generate_insights, now) or {}
            report["steps"] = steps
            report["skipped"] = False
            self.last_report = report
            logger.info(f"Maintenance cycle completed: {steps}")
        finally:
            with self._guard:
                self._running = False
        return report

    def _run_step(
        self: "MaintenanceScheduler",
        name: str,
        steps: dict[str, str],
        fn: Callable[[float], Any],
        now: float,
    ) -> Any:
        try:
            result = fn(now)
        except Exception:
            logger.exception(f"Maintenance step {name} failed")
            steps[name] = "failed"
            return None
        steps[name] = "ok"
        return result

    def _optimize(self: "MaintenanceScheduler", now: float) -> dict[str, int]:
        totals = {"promoted": 0, "demoted": 0, "pruned": 0}
        for context in self.store.contexts():
            changes = self.store.optimize(context, now=now)
            for name in totals:
                totals[name] += len(changes[name])
        logger.info(f"Selector optimization completed: {totals}")
        return totals

    def _cleanup(self: "MaintenanceScheduler", now: float) -> int:
        removed = 0
        for context in self.store.contexts():
            removed += len(self.store.cleanup(context, retention_days=self.retention_days, now=now))
        logger.info(f"Data cleanup completed: {removed} candidates removed")
        return removed

    def _recompute(self: "MaintenanceScheduler", now: float) -> int:
        updated = 0
        for context in self.store.contexts():
            if self.store.recompute_aggregates(context, now=now):
                updated += 1
        logger.info(f"Success rates updated for {updated} contexts")
        return updated

    def generate_insights(self: "MaintenanceScheduler", now: float | None = None) -> dict[str, Any]:
        """Build the insights report and store it under ``meta:insights``.

        Returns:
            {
                'generated_at': float,
                'top_performers': [{'context', 'candidate', 'success_rate', 'attempts'}],
                'worst_performers': [...],
                'statistics': {...},
                'recommendations': [str],
            }
        """
        now = self.clock() if now is None else now
        rows = []
        for context in self.store.contexts():
            for candidate in self.store.get_candidates(context):
                if candidate.attempts:
                    rows.append((context.key, candidate))

        def summary(context_key: str, candidate: Candidate) -> dict[str, Any]:
            return {
                "context": context_key,
                "candidate": candidate.key,
                "success_rate": round(candidate.success_rate, 3),
                "attempts": candidate.attempts,
            }

        established = [row for row in rows if row[1].attempts >= settings.INSIGHT_MIN_ATTEMPTS]
        top = sorted(established, key=lambda row: -row[1].success_rate)[: settings.INSIGHT_TOP_PERFORMERS]
        worst = sorted(
            (row for row in established if row[1].success_rate < settings.INSIGHT_LOW_PERFORMER_RATE),
            key=lambda row: row[1].success_rate,
        )[: settings.INSIGHT_WORST_PERFORMERS]

        rates = [candidate.success_rate for _, candidate in rows]
        statistics = {
            "total_candidates": len(rows),
            "average_success_rate": sum(rates) / len(rates) if rates else 0.0,
            "high_performers": sum(1 for rate in rates if rate > settings.INSIGHT_HIGH_PERFORMER_RATE),
            "low_performers": sum(1 for rate in rates if rate < settings.INSIGHT_LOW_PERFORMER_RATE),
            "total_attempts": sum(candidate.attempts for _, candidate in rows),
        }

        recommendations = []
        if statistics["low_performers"] > statistics["high_performers"]:
            recommendations.append("Consider updating extraction strategies - high failure rate detected")
        if rows and statistics["average_success_rate"] < settings.INSIGHT_SUCCESS_THRESHOLD:
            recommendations.append("Overall success rate is low - may need selector discovery refresh")
        if len(top) < 5:
            recommendations.append("Limited high-performing selectors - increase learning data collection")

        report = {
            "generated_at": now,
            "top_performers": [summary(*row) for row in top],
            "worst_performers": [summary(*row) for row in worst],
            "statistics": statistics,
            "recommendations": recommendations,
        }
        if not self.store.update_document(INSIGHTS_KEY, lambda _current: report, "store insights"):
            logger.warning("Insights report could not be stored")
        logger.info(f"Insights generated: {len(top)} top performers, {len(recommendations)} recommendations")
        return report

    def get_insights(self: "MaintenanceScheduler") -> dict[str, Any] | None:
        """Last stored insights report, falling back to the in-memory one while the store is unavailable."""
        return self.store.load_document(INSIGHTS_KEY) or self.last_report

    def get_system_health(self: "MaintenanceScheduler") -> dict[str, Any]:
        """Summarize system health from the last insights report."""
        insights = self.get_insights()
        if not insights:
            return {"status": "unknown", "message": "No insights available"}

        stats = insights["statistics"]
        status, message = "healthy", "System performing well"
        if stats["total_candidates"] and stats["average_success_rate"] < settings.HEALTH_CRITICAL_RATE:
            status, message = "critical", "Low success rate - immediate attention needed"
        elif stats["total_candidates"] and stats["average_success_rate"] < settings.INSIGHT_SUCCESS_THRESHOLD:
            status, message = "warning", "Below optimal performance"
        elif stats["low_performers"] > stats["high_performers"] * 2:
            status, message = "warning", "High number of failing selectors"

        return {
            "status": status,
            "message": message,
            "success_rate": stats["average_success_rate"],
            "total_candidates": stats["total_candidates"],
            "recommendations": insights["recommendations"],
            "last_maintenance": insights["generated_at"],
        }

    def force_maintenance(self: "MaintenanceScheduler") -> dict[str, Any]:
        logger.info("Forced maintenance cycle initiated")
        return self.run_maintenance_cycle()

    def start(self: "MaintenanceScheduler") -> None:
        """Start background maintenance: a first cycle after the initial delay, then one per interval."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="maintenance", daemon=True)
        self._thread.start()
        logger.info(f"Maintenance scheduler started (interval {self.interval}s)")

    def stop(self: "MaintenanceScheduler", timeout: float | None = None) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Maintenance scheduler stopped")

    def _loop(self: "MaintenanceScheduler") -> None:
        delay = self.initial_delay
        while not self._stop_event.wait(delay):
            try:
                self.run_maintenance_cycle()
            except Exception:
                logger.exception("Maintenance cycle failed")
            delay = self.interval

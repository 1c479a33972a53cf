import time
from unittest.mock import patch

import pytest

from adaptive_scraper.learning_store import LearningStore
from adaptive_scraper.maintenance import INSIGHTS_KEY, MaintenanceScheduler
from adaptive_scraper.models import ErrorClass, ExtractionContext, PriorityTier
from conftest import DAY, NOW, FlakyStore


@pytest.fixture
def scheduler(store, clock):
    return MaintenanceScheduler(store, clock=clock)


def record(store, context, key, successes, failures, now=NOW):
    for _ in range(successes):
        store.record_outcome(context, key, True, now=now)
    for _ in range(failures):
        store.record_outcome(context, key, False, ErrorClass.ELEMENT_NOT_FOUND, now=now)


class TestMaintenanceCycle:
    def test_stale_failing_candidate_is_removed(self, scheduler, store, name_context):
        record(store, name_context, "selector:.gone::text", 0, 20, now=NOW - 100 * DAY)
        record(store, name_context, "selector:h1::text", 3, 0)

        scheduler.run_maintenance_cycle()

        assert [c.key for c in store.get_candidates(name_context)] == ["selector:h1::text"]

    def test_reliable_candidate_is_promoted(self, scheduler, store, name_context):
        record(store, name_context, "selector:h1::text", 5, 1)

        scheduler.run_maintenance_cycle()

        [candidate] = store.get_candidates(name_context)
        assert candidate.priority_tier == PriorityTier.HIGH

    def test_high_value_candidate_survives_retention(self, scheduler, store, name_context):
        record(store, name_context, "selector:h1::text", 6, 0, now=NOW - 100 * DAY)

        scheduler.run_maintenance_cycle()

        assert [c.key for c in store.get_candidates(name_context)] == ["selector:h1::text"]

    def test_aggregates_are_recomputed(self, scheduler, store, name_context):
        record(store, name_context, "selector:h1::text", 3, 1)

        report = scheduler.run_maintenance_cycle()

        assert report["steps"] == {"optimize": "ok", "cleanup": "ok", "recompute": "ok", "insights": "ok"}
        assert store.get_context_stats(name_context)["aggregates"]["success_rate"] == pytest.approx(0.75)

    def test_insights_report(self, scheduler, store, name_context):
        description = ExtractionContext(site_template="example.com/company/*", field_type="description")
        record(store, name_context, "selector:h1::text", 10, 0)
        record(store, description, "selector:.about::text", 1, 9)

        report = scheduler.run_maintenance_cycle()

        assert report["top_performers"][0]["candidate"] == "selector:h1::text"
        assert report["worst_performers"] == [
            {
                "context": description.key,
                "candidate": "selector:.about::text",
                "success_rate": 0.1,
                "attempts": 10,
            }
        ]
        assert report["statistics"]["total_candidates"] == 2
        assert report["statistics"]["average_success_rate"] == pytest.approx(0.55)
        assert any("discovery refresh" in r for r in report["recommendations"])
        assert store.backend.load(INSIGHTS_KEY)["generated_at"] == NOW

    def test_failing_step_does_not_stop_the_cycle(self, scheduler, store, name_context):
        record(store, name_context, "selector:h1::text", 3, 1)

        with patch.object(scheduler, "_cleanup", side_effect=RuntimeError("disk full")):
            report = scheduler.run_maintenance_cycle()

        assert report["steps"]["cleanup"] == "failed"
        assert report["steps"]["recompute"] == "ok"
        assert report["steps"]["insights"] == "ok"

    def test_concurrent_cycles_are_refused(self, scheduler):
        nested = []

        def reentrant(now):
            nested.append(scheduler.run_maintenance_cycle(now))
            return {}

        with patch.object(scheduler, "_optimize", side_effect=reentrant):
            report = scheduler.run_maintenance_cycle()

        assert nested == [{"skipped": True}]
        assert report["skipped"] is False
        assert scheduler.running is False

    def test_force_maintenance(self, scheduler):
        assert scheduler.force_maintenance()["steps"]["insights"] == "ok"


class TestSystemHealth:
    def test_unknown_before_first_cycle(self, scheduler):
        assert scheduler.get_system_health()["status"] == "unknown"

    def test_healthy(self, scheduler, store, name_context):
        record(store, name_context, "selector:h1::text", 10, 0)
        scheduler.run_maintenance_cycle()

        health = scheduler.get_system_health()

        assert health["status"] == "healthy"
        assert health["last_maintenance"] == NOW

    def test_critical(self, scheduler, store, name_context):
        record(store, name_context, "selector:h1::text", 1, 9)
        scheduler.run_maintenance_cycle()

        assert scheduler.get_system_health()["status"] == "critical"

    def test_warning(self, scheduler, store, name_context):
        record(store, name_context, "selector:h1::text", 5, 5)
        scheduler.run_maintenance_cycle()

        assert scheduler.get_system_health()["status"] == "warning"


class TestStoreOutage:
    @pytest.fixture
    def backend(self):
        return FlakyStore()

    @pytest.fixture
    def scheduler(self, backend, clock):
        return MaintenanceScheduler(LearningStore(backend, clock=clock), clock=clock)

    def test_cycle_during_outage_still_reports(self, scheduler, backend):
        backend.failing = True

        report = scheduler.run_maintenance_cycle()

        assert report["steps"]["insights"] == "ok"
        assert scheduler.store.degraded is True

    def test_health_survives_an_outage(self, scheduler, backend, name_context):
        record(scheduler.store, name_context, "selector:h1::text", 10, 0)
        scheduler.run_maintenance_cycle()
        backend.failing = True

        health = scheduler.get_system_health()

        assert health["status"] == "healthy"
        assert health["total_candidates"] == 1
        assert scheduler.store.degraded is True


def test_background_scheduler_runs_first_cycle_after_delay(store):
    scheduler = MaintenanceScheduler(store, interval=3600, initial_delay=0.01)
    scheduler.start()
    try:
        deadline = time.monotonic() + 5
        while scheduler.last_report is None and time.monotonic() < deadline:
            time.sleep(0.01)
    finally:
        scheduler.stop(timeout=5)

    assert scheduler.last_report is not None
    assert scheduler.last_report["steps"]["optimize"] == "ok"

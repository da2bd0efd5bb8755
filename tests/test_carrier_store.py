from datetime import datetime, date, timedelta

import pytest

from carrier_db import (
    Carrier, ApiSyncLog, SafetyRatingHistory, InsuranceHistory, InsuranceAlert, SavedCarrier, DataRefreshJob,
)
from carrier_store import (
    upsert_carrier, get_carrier, carrier_to_dict, record_safety_rating_change, get_safety_rating_history,
    get_recent_safety_rating_changes, get_safety_risk, get_expiring_insurance, pending_insurance_alerts,
    mark_insurance_alert_sent, log_sync_result, record_sync_failure, count_unresolved_issues, report_quality_issue,
    get_carriers_to_scrape, get_new_carriers, get_carriers_needing_sync, refresh_data_quality_scores,
    start_refresh_job, update_refresh_job_progress, finish_refresh_job, get_recent_jobs, get_sync_overview,
    save_carrier,
)

BASE = {"dot_number": "1234567", "legal_name": "ACME TRUCKING LLC", "entity_type": "CARRIER"}


class TestUpsertCarrier:
    def test_insert(self, db, now):
        carrier, changes = upsert_carrier(db, {**BASE, "safety_rating": "satisfactory", "vehicle_count": 42},
                                          "safer_scraper", now=now)

        assert carrier.id is not None
        assert carrier.data_source == "safer_scraper"
        assert carrier.created_at == now
        assert carrier.updated_at == now
        assert carrier.vehicle_count == 42
        assert changes["safety_rating"] == {"old": None, "new": "satisfactory"}
        assert carrier.trust_score is not None
        assert carrier.data_quality_score is not None
        # no history or sync log for brand new rows
        assert db.query(SafetyRatingHistory).count() == 0
        assert db.query(ApiSyncLog).count() == 0

    def test_placeholder_name_for_new_rows(self, db, now):
        carrier, _ = upsert_carrier(db, {"dot_number": 7654321}, "manual", now=now)
        assert carrier.dot_number == "7654321"
        assert carrier.legal_name == "Carrier 7654321"

    def test_empty_values_do_not_overwrite(self, db, now):
        upsert_carrier(db, {**BASE, "phone": "(217) 555-0100", "cargo_carried": ["General Freight"]}, "manual", now=now)
        carrier, changes = upsert_carrier(db, {**BASE, "phone": "", "cargo_carried": [], "dba_name": None,
                                               "not_a_column": "x"}, "manual", now=now)

        assert carrier.phone == "(217) 555-0100"
        assert carrier.cargo_carried == ["General Freight"]
        assert changes == {}
        assert db.query(ApiSyncLog).count() == 0

    def test_update_logs_tracked_changes(self, db, now):
        upsert_carrier(db, {**BASE, "safety_rating": "satisfactory", "authority_status": "Active"}, "manual", now=now)
        later = now + timedelta(days=1)
        carrier, changes = upsert_carrier(db, {**BASE, "safety_rating": "conditional",
                                               "authority_status": "Inactive"}, "fmcsa", now=later)

        assert set(changes) == {"safety_rating", "authority_status"}
        log = db.query(ApiSyncLog).one()
        assert log.sync_type == "data_update"
        assert log.api_source == "fmcsa"
        assert log.old_data == {"safety_rating": "satisfactory", "authority_status": "Active"}
        assert log.new_data == {"safety_rating": "conditional", "authority_status": "Inactive"}
        assert log.changes_detected == {"safety_rating_changed": True, "authority_status_changed": True}

        history = db.query(SafetyRatingHistory).one()
        assert history.change_reason == "fmcsa_update"
        assert carrier.safety_rating_change_count == 1
        assert carrier.safety_rating_last_changed == later
        assert carrier.safety_rating_trend == "declining"
        assert carrier.safety_rating_stability_score == 85

    def test_insurance_dates_are_parsed(self, db, now):
        carrier, _ = upsert_carrier(db, {**BASE, "insurance_effective_date": "01/15/2024",
                                         "insurance_expiry_date": "not a date"}, "manual", now=now)
        assert carrier.insurance_effective_date == date(2024, 1, 15)
        assert carrier.insurance_expiry_date is None

    def test_carrier_to_dict(self, db, now):
        carrier, _ = upsert_carrier(db, BASE, "manual", now=now)
        data = carrier_to_dict(carrier)
        assert data["dot_number"] == "1234567"
        assert data["id"] == carrier.id
        assert "created_at" in data


class TestSafetyRatingHistory:
    def test_history_window_and_recent_changes(self, db, now):
        carrier, _ = upsert_carrier(db, {**BASE, "safety_rating": "conditional"}, "manual", now=now)
        record_safety_rating_change(db, carrier, "not-rated", "conditional", "manual", now - timedelta(days=800))
        upsert_carrier(db, {**BASE, "safety_rating": "satisfactory"}, "safer_scraper", now=now)

        assert len(get_safety_rating_history(db, carrier.id, months_back=24, now=now)) == 1
        assert len(get_safety_rating_history(db, carrier.id, months_back=36, now=now)) == 2
        recent = get_recent_safety_rating_changes(db, days_back=30, now=now)
        assert len(recent) == 1
        assert recent[0]["dot_number"] == "1234567"
        assert recent[0]["new_rating"] == "satisfactory"
        assert recent[0]["data_source"] == "safer_scraper"

    def test_stability_recovers_after_long_gap(self, db, now):
        carrier, _ = upsert_carrier(db, {**BASE, "safety_rating": "conditional"}, "manual", now=now)
        record_safety_rating_change(db, carrier, "not-rated", "conditional", "manual", now - timedelta(days=800))
        carrier, _ = upsert_carrier(db, {**BASE, "safety_rating": "satisfactory"}, "fmcsa", now=now)

        assert carrier.safety_rating_change_count == 2
        assert carrier.safety_rating_stability_score == 90
        assert carrier.safety_rating_trend == "improving"

    def test_safety_risk(self, db, now):
        carrier, _ = upsert_carrier(db, {**BASE, "safety_rating": "satisfactory"}, "manual", now=now)
        # stability 100, stable trend, never changed
        assert get_safety_risk(carrier, now) == 100


class TestInsuranceTracking:
    def test_first_expiry_creates_history_and_alert(self, db, now):
        upsert_carrier(db, {**BASE, "insurance_carrier": "GREAT WEST", "insurance_policy_number": "P1",
                            "insurance_expiry_date": "2025-06-20"}, "manual", now=now)

        history = db.query(InsuranceHistory).one()
        assert history.old_expiry_date is None
        assert history.new_expiry_date == date(2025, 6, 20)
        assert history.new_insurance_carrier == "GREAT WEST"
        assert history.change_reason == "manual_update"
        assert db.query(InsuranceAlert).one().expiry_date == date(2025, 6, 20)

    def test_renewal_records_old_values(self, db, now):
        upsert_carrier(db, {**BASE, "insurance_carrier": "GREAT WEST", "insurance_policy_number": "P1",
                            "insurance_expiry_date": "2025-06-20"}, "manual", now=now)
        upsert_carrier(db, {**BASE, "insurance_policy_number": "P2", "insurance_expiry_date": "2026-06-20"},
                       "fmcsa", now=now)

        renewal = db.query(InsuranceHistory).order_by(InsuranceHistory.id.desc()).first()
        assert renewal.old_expiry_date == date(2025, 6, 20)
        assert renewal.old_policy_number == "P1"
        assert renewal.new_policy_number == "P2"
        assert renewal.change_reason == "auto_refresh"
        assert db.query(InsuranceAlert).count() == 2

    def test_unchanged_expiry_is_not_recorded(self, db, now):
        upsert_carrier(db, {**BASE, "insurance_expiry_date": "2025-06-20"}, "manual", now=now)
        upsert_carrier(db, {**BASE, "insurance_expiry_date": date(2025, 6, 20)}, "manual", now=now)
        assert db.query(InsuranceHistory).count() == 1

    def test_expiring_insurance(self, db, now):
        today = date(2025, 6, 1)
        upsert_carrier(db, {**BASE, "insurance_expiry_date": "2025-06-11"}, "manual", now=now)
        upsert_carrier(db, {"dot_number": "222222", "legal_name": "LATER", "insurance_expiry_date": "2025-09-01"},
                       "manual", now=now)
        upsert_carrier(db, {"dot_number": "333333", "legal_name": "EXPIRED", "insurance_expiry_date": "2025-05-01"},
                       "manual", now=now)

        rows = get_expiring_insurance(db, days_ahead=30, today=today)

        assert [r["dot_number"] for r in rows] == ["1234567"]
        assert rows[0]["days_until_expiry"] == 10

    def test_alert_thresholds(self, db, now):
        upsert_carrier(db, {**BASE, "insurance_expiry_date": "2025-06-11"}, "manual", now=now)

        pending = pending_insurance_alerts(db, today=date(2025, 6, 1))
        assert len(pending) == 1
        assert pending[0]["threshold"] == 15
        assert pending[0]["days_left"] == 10

        alert = mark_insurance_alert_sent(db, pending[0]["alert_id"], 15, now=now)
        assert alert.alert_sent_15d and alert.alert_sent_30d
        assert not alert.alert_sent_7d
        assert pending_insurance_alerts(db, today=date(2025, 6, 1)) == []

        later = pending_insurance_alerts(db, today=date(2025, 6, 6))
        assert [a["threshold"] for a in later] == [7]

    def test_superseded_alerts_are_skipped(self, db, now):
        upsert_carrier(db, {**BASE, "insurance_expiry_date": "2025-06-11"}, "manual", now=now)
        upsert_carrier(db, {**BASE, "insurance_expiry_date": "2025-06-25"}, "manual", now=now)

        pending = pending_insurance_alerts(db, today=date(2025, 6, 1))
        assert [p["expiry_date"] for p in pending] == [date(2025, 6, 25)]
        assert pending[0]["threshold"] == 30

    def test_mark_unknown_alert(self, db):
        assert mark_insurance_alert_sent(db, 999, 30) is None


class TestSyncFailures:
    def test_record_failure(self, db, now):
        upsert_carrier(db, BASE, "manual", now=now)

        carrier = record_sync_failure(db, "1234567", "none", "All data sources failed", 1500)

        assert carrier.api_error_count == 1
        assert carrier.api_sync_status == "error"
        log = db.query(ApiSyncLog).one()
        assert log.success is False
        assert log.response_time_ms == 1500

    def test_unknown_carrier(self, db):
        assert record_sync_failure(db, "7654321", "none", "x") is None

    def test_log_sync_result_defaults(self, db, now):
        carrier, _ = upsert_carrier(db, BASE, "manual", now=now)
        entry = log_sync_result(db, carrier.id, "fmcsa", True, new_data={"legal_name": "ACME"})
        assert entry.sync_type == "full_profile"
        assert entry.changes_detected == {}

    def test_quality_issues_lower_score(self, db, now):
        carrier, _ = upsert_carrier(db, BASE, "manual", now=now)
        before = carrier.data_quality_score
        report_quality_issue(db, carrier.id, "missing_fields", "medium", "No safety rating", field_name="safety_rating")
        report_quality_issue(db, carrier.id, "stale_data", "low", "Not verified")

        assert count_unresolved_issues(db, carrier.id) == 2
        carrier, _ = upsert_carrier(db, BASE, "manual", now=now)
        assert carrier.data_quality_score == before - 4


class TestSelection:
    def test_new_carriers(self, db, now):
        upsert_carrier(db, {"dot_number": "111111", "legal_name": "A"}, "manual", now=now - timedelta(days=2))
        upsert_carrier(db, {"dot_number": "222222", "legal_name": "B"}, "manual", now=now)
        upsert_carrier(db, {"dot_number": "333333", "legal_name": "C"}, "fmcsa", now=now)
        upsert_carrier(db, {"dot_number": "444444", "legal_name": "D"}, "manual", now=now, extra={"last_verified": now})

        assert get_new_carriers(db) == ["222222", "111111"]

    def test_carriers_to_scrape_order(self, db, now):
        upsert_carrier(db, {"dot_number": "111111", "legal_name": "A"}, "manual", now=now,
                       extra={"last_verified": now - timedelta(days=1)})
        upsert_carrier(db, {"dot_number": "222222", "legal_name": "B"}, "manual", now=now,
                       extra={"last_verified": now - timedelta(days=10)})
        upsert_carrier(db, {"dot_number": "333333", "legal_name": "C"}, "manual", now=now)

        assert get_carriers_to_scrape(db, limit=2) == ["333333", "222222"]

    def test_needing_sync_priorities(self, db, now):
        upsert_carrier(db, {"dot_number": "111111", "legal_name": "A"}, "manual", now=now,
                       extra={"last_verified": now - timedelta(days=200)})
        upsert_carrier(db, {"dot_number": "222222", "legal_name": "B"}, "manual", now=now,
                       extra={"last_verified": now - timedelta(days=100)})
        upsert_carrier(db, {"dot_number": "333333", "legal_name": "C"}, "manual", now=now,
                       extra={"last_verified": now - timedelta(days=5), "api_error_count": 1})
        upsert_carrier(db, {"dot_number": "444444", "legal_name": "D"}, "manual", now=now,
                       extra={"last_verified": now - timedelta(days=5)})

        rows = {r["dot_number"]: r for r in get_carriers_needing_sync(db, now=now)}

        assert set(rows) == {"111111", "222222", "333333"}
        assert rows["111111"]["priority"] == "high"
        assert rows["222222"]["priority"] == "medium"
        assert rows["333333"]["priority"] == "low"
        assert rows["333333"]["days_since_verification"] == 5

    def test_refresh_quality_flags_verification(self, db, now):
        upsert_carrier(db, {"dot_number": "111111", "legal_name": "A"}, "manual", now=now)
        upsert_carrier(db, {**BASE, "safety_rating": "satisfactory", "insurance_status": "Active",
                            "authority_status": "Active", "physical_address": "123 MAIN ST"}, "fmcsa", now=now,
                       extra={"last_verified": now})

        assert refresh_data_quality_scores(db, now=now) == 2
        assert get_carrier(db, "111111").needs_verification is True
        assert get_carrier(db, "1234567").needs_verification is False
        assert get_carrier(db, "1234567").data_quality_score == 100


class TestRefreshJobs:
    def test_job_lifecycle(self, db, now):
        job = start_refresh_job(db, "bulk_sync", {"total_count": 3}, now=now)
        assert job.status == "running"
        assert job.started_at == now

        update_refresh_job_progress(db, job, 2, {"progress_percentage": 67})
        assert job.carriers_processed == 2
        assert job.job_metadata == {"total_count": 3, "progress_percentage": 67}

        finish_refresh_job(db, job, 3, 2, 1, ["333333: HTTP 404"], now=now)
        stored = db.get(DataRefreshJob, job.id)
        assert stored.status == "completed"
        assert stored.carriers_failed == 1
        assert stored.errors == ["333333: HTTP 404"]
        assert stored.completed_at == now

    def test_job_with_only_failures_is_failed(self, db):
        job = start_refresh_job(db, "bulk_scrape")
        finish_refresh_job(db, job, 2, 0, 2, ["a", "b"])
        assert job.status == "failed"

    def test_explicit_status_wins(self, db):
        job = start_refresh_job(db, "cron_daily")
        finish_refresh_job(db, job, 0, 0, 0, status="completed", metadata={"message": "nothing to do"})
        assert job.status == "completed"
        assert job.job_metadata["message"] == "nothing to do"

    def test_recent_jobs_newest_first(self, db):
        first = start_refresh_job(db, "bulk_scrape")
        second = start_refresh_job(db, "bulk_sync")
        assert [j.id for j in get_recent_jobs(db, limit=5)][:2] == [second.id, first.id]

    def test_sync_overview(self, db, now):
        upsert_carrier(db, {**BASE, "safety_rating": "satisfactory", "insurance_status": "Active",
                            "authority_status": "Active", "physical_address": "123 MAIN ST"}, "fmcsa", now=now,
                       extra={"last_verified": now})
        carrier, _ = upsert_carrier(db, {"dot_number": "222222", "legal_name": "B"}, "manual", now=now)
        report_quality_issue(db, carrier.id, "stale_data", "high", "Never verified")
        start_refresh_job(db, "bulk_sync")

        stats = get_sync_overview(db, now=now)

        assert stats["total_carriers"] == 2
        assert stats["high_quality"] == 1
        assert stats["low_quality"] == 1
        assert stats["recently_synced"] == 1
        assert stats["needs_sync"] == 1
        assert stats["open_issues"] == {"critical": 0, "high": 1, "medium": 0, "low": 0}
        assert len(stats["recent_jobs"]) == 1


class TestSavedCarriers:
    def test_save_is_idempotent(self, db, now):
        carrier, _ = upsert_carrier(db, BASE, "manual", now=now)

        save_carrier(db, "user-1", carrier.id, notes="preferred")
        saved = save_carrier(db, "user-1", carrier.id)

        assert db.query(SavedCarrier).count() == 1
        assert saved.notes == "preferred"
        assert save_carrier(db, "user-1", carrier.id, notes="backup").notes == "backup"


@pytest.mark.parametrize("value", ["2025-06-20", "06/20/2025", datetime(2025, 6, 20, 8, 30), date(2025, 6, 20)])
def test_expiry_date_formats(db, now, value):
    carrier, _ = upsert_carrier(db, {**BASE, "insurance_expiry_date": value}, "manual", now=now)
    assert carrier.insurance_expiry_date == date(2025, 6, 20)
    assert db.query(Carrier).count() == 1

from datetime import datetime, date, timedelta
from decimal import Decimal

import pandas as pd
from sqlalchemy import func, or_

from carrier_db import (
    Carrier, SavedCarrier, ApiSyncLog, DataQualityIssue, DataRefreshJob,
    SafetyRatingHistory, InsuranceHistory, InsuranceAlert,
)
from carrier_filter import carrier_only_query
from trust_score import (
    calculate_trust_score, calculate_data_quality_score, safety_stability_score,
    safety_rating_trend, safety_rating_risk_score, months_between,
)

TRACKED_FIELDS = ['safety_rating', 'insurance_status', 'authority_status', 'legal_name']
CARRIER_COLUMNS = {c.name for c in Carrier.__table__.columns} - {'id', 'created_at'}
DATE_COLUMNS = ['insurance_effective_date', 'insurance_expiry_date']
ALERT_THRESHOLDS = [1, 7, 15, 30]


def _to_date(value):
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    ts = pd.to_datetime(value, errors='coerce')
    if pd.isnull(ts):
        return None
    return ts.date()


def _empty(value):
    return value is None or value == '' or value == []


def _json_value(value):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    return value


def _snapshot(carrier, fields):
    return {f: _json_value(getattr(carrier, f)) for f in fields}


def get_carrier(db, dot_number):
    return db.query(Carrier).filter(Carrier.dot_number == str(dot_number)).first()


def carrier_to_dict(carrier):
    return {c.name: getattr(carrier, c.name) for c in Carrier.__table__.columns}


# --- Upsert ---
def upsert_carrier(db, data, source, now=None, extra=None):
    """
    Insert or update a carrier by dot_number.
    Only non-empty values overwrite stored ones; `extra` is applied as-is.
    Returns (carrier, changes) where changes maps tracked fields to {old, new}.
    """
    now = now or datetime.now()
    dot_number = str(data['dot_number'])
    values = {k: v for k, v in data.items() if k in CARRIER_COLUMNS and not _empty(v)}
    for col in DATE_COLUMNS:
        if col in values:
            values[col] = _to_date(values[col])
            if values[col] is None:
                del values[col]
    values.update(extra or {})
    values['dot_number'] = dot_number
    values['data_source'] = source
    values['updated_at'] = now

    carrier = get_carrier(db, dot_number)
    is_new = carrier is None
    if is_new:
        carrier = Carrier(dot_number=dot_number, legal_name=values.get('legal_name') or f'Carrier {dot_number}',
                          created_at=now)
        db.add(carrier)
        old = {f: None for f in TRACKED_FIELDS}
        old_expiry = None
        old_insurance = (None, None)
    else:
        old = _snapshot(carrier, TRACKED_FIELDS)
        old_expiry = carrier.insurance_expiry_date
        old_insurance = (carrier.insurance_carrier, carrier.insurance_policy_number)

    for key, value in values.items():
        setattr(carrier, key, value)
    db.flush()

    new = _snapshot(carrier, TRACKED_FIELDS)
    changes = {f: {'old': old[f], 'new': new[f]} for f in TRACKED_FIELDS if old[f] != new[f]}

    if not is_new and 'safety_rating' in changes and changes['safety_rating']['new']:
        record_safety_rating_change(db, carrier, changes['safety_rating']['old'],
                                    changes['safety_rating']['new'], source, now)
    if carrier.insurance_expiry_date != old_expiry and carrier.insurance_expiry_date is not None:
        record_insurance_change(db, carrier, old_expiry, old_insurance, source, now)
    if not is_new and changes:
        db.add(ApiSyncLog(
            carrier_id=carrier.id,
            api_source=source,
            sync_type='data_update',
            old_data={f: c['old'] for f, c in changes.items()},
            new_data={f: c['new'] for f, c in changes.items()},
            changes_detected={f'{f}_changed': True for f in changes},
            success=True,
            created_at=now,
        ))

    carrier.trust_score = calculate_trust_score(carrier, now=now)['score']
    carrier.data_quality_score = calculate_data_quality_score(
        carrier, count_unresolved_issues(db, carrier.id), now=now)
    db.commit()
    db.refresh(carrier)
    verb = 'Inserted' if is_new else 'Updated'
    print(f"[DB] {verb} DOT {dot_number} from {source} (changes: {', '.join(changes) or 'none'})")
    return carrier, changes


# --- Safety rating history ---
def record_safety_rating_change(db, carrier, old_rating, new_rating, source, now=None):
    now = now or datetime.now()
    previous = (db.query(func.max(SafetyRatingHistory.change_date))
                .filter(SafetyRatingHistory.carrier_id == carrier.id,
                        SafetyRatingHistory.change_date < now)
                .scalar())
    db.add(SafetyRatingHistory(
        carrier_id=carrier.id,
        old_rating=old_rating,
        new_rating=new_rating,
        change_date=now,
        data_source=source,
        change_reason='fmcsa_update' if source == 'fmcsa' else 'system_update',
    ))
    db.flush()

    history = (db.query(SafetyRatingHistory)
               .filter(SafetyRatingHistory.carrier_id == carrier.id)
               .order_by(SafetyRatingHistory.change_date)
               .all())
    carrier.safety_rating_change_count = len(history)
    carrier.safety_rating_last_changed = now
    carrier.safety_rating_stability_score = safety_stability_score(
        len(history), months_between(now, previous) if previous else None)
    carrier.safety_rating_trend = safety_rating_trend(
        [(h.old_rating, h.new_rating, h.change_date) for h in history], now=now)
    print(f"[DB] DOT {carrier.dot_number} safety rating {old_rating} -> {new_rating} "
          f"(trend={carrier.safety_rating_trend})")


def get_safety_rating_history(db, carrier_id, months_back=24, now=None):
    now = now or datetime.now()
    cutoff = (now - pd.DateOffset(months=months_back)).to_pydatetime()
    return (db.query(SafetyRatingHistory)
            .filter(SafetyRatingHistory.carrier_id == carrier_id,
                    SafetyRatingHistory.change_date >= cutoff)
            .order_by(SafetyRatingHistory.change_date.desc())
            .all())


def get_recent_safety_rating_changes(db, days_back=30, now=None):
    now = now or datetime.now()
    rows = (db.query(SafetyRatingHistory, Carrier)
            .join(Carrier, Carrier.id == SafetyRatingHistory.carrier_id)
            .filter(SafetyRatingHistory.change_date >= now - timedelta(days=days_back))
            .order_by(SafetyRatingHistory.change_date.desc())
            .all())
    return [{
        'carrier_id': carrier.id,
        'dot_number': carrier.dot_number,
        'legal_name': carrier.legal_name,
        'old_rating': h.old_rating,
        'new_rating': h.new_rating,
        'change_date': h.change_date,
        'data_source': h.data_source,
    } for h, carrier in rows]


def get_safety_risk(carrier, now=None):
    now = now or datetime.now()
    months = months_between(now, carrier.safety_rating_last_changed)
    return safety_rating_risk_score(
        carrier.safety_rating or 'not-rated',
        carrier.safety_rating_stability_score,
        carrier.safety_rating_trend,
        carrier.safety_rating_change_count,
        months,
    )


# --- Insurance history and alerts ---
def record_insurance_change(db, carrier, old_expiry, old_insurance, source, now=None):
    now = now or datetime.now()
    old_carrier, old_policy = old_insurance
    db.add(InsuranceHistory(
        carrier_id=carrier.id,
        old_expiry_date=old_expiry,
        new_expiry_date=carrier.insurance_expiry_date,
        old_insurance_carrier=old_carrier,
        new_insurance_carrier=carrier.insurance_carrier,
        old_policy_number=old_policy,
        new_policy_number=carrier.insurance_policy_number,
        change_reason='manual_update' if source == 'manual' else 'auto_refresh',
        changed_at=now,
    ))
    exists = (db.query(InsuranceAlert)
              .filter(InsuranceAlert.carrier_id == carrier.id,
                      InsuranceAlert.expiry_date == carrier.insurance_expiry_date)
              .first())
    if not exists:
        db.add(InsuranceAlert(carrier_id=carrier.id, expiry_date=carrier.insurance_expiry_date,
                              created_at=now, updated_at=now))
    db.flush()


def get_expiring_insurance(db, days_ahead=30, today=None):
    today = today or date.today()
    carriers = (db.query(Carrier)
                .filter(Carrier.insurance_expiry_date.isnot(None),
                        Carrier.insurance_expiry_date >= today,
                        Carrier.insurance_expiry_date <= today + timedelta(days=days_ahead))
                .order_by(Carrier.insurance_expiry_date)
                .all())
    return [{
        'carrier_id': c.id,
        'dot_number': c.dot_number,
        'legal_name': c.legal_name,
        'insurance_carrier': c.insurance_carrier,
        'expiry_date': c.insurance_expiry_date,
        'days_until_expiry': (c.insurance_expiry_date - today).days,
    } for c in carriers]


def _threshold_for(days_left):
    for threshold in ALERT_THRESHOLDS:
        if days_left <= threshold:
            return threshold
    return None


def pending_insurance_alerts(db, today=None):
    """Alerts whose tightest applicable threshold (30/15/7/1 days) has not been sent."""
    today = today or date.today()
    rows = (db.query(InsuranceAlert, Carrier)
            .join(Carrier, Carrier.id == InsuranceAlert.carrier_id)
            .filter(InsuranceAlert.expiry_date >= today,
                    InsuranceAlert.expiry_date <= today + timedelta(days=max(ALERT_THRESHOLDS)))
            .order_by(InsuranceAlert.expiry_date)
            .all())
    pending = []
    for alert, carrier in rows:
        # a stale alert row for an old expiry is superseded by the carrier's current one
        if carrier.insurance_expiry_date != alert.expiry_date:
            continue
        days_left = (alert.expiry_date - today).days
        threshold = _threshold_for(days_left)
        if threshold is None or getattr(alert, f'alert_sent_{threshold}d'):
            continue
        pending.append({
            'alert_id': alert.id,
            'carrier_id': carrier.id,
            'dot_number': carrier.dot_number,
            'legal_name': carrier.legal_name,
            'expiry_date': alert.expiry_date,
            'days_left': days_left,
            'threshold': threshold,
        })
    return pending


def mark_insurance_alert_sent(db, alert_id, threshold, now=None):
    now = now or datetime.now()
    alert = db.get(InsuranceAlert, alert_id)
    if alert is None:
        return None
    for t in ALERT_THRESHOLDS:
        if t >= threshold:
            setattr(alert, f'alert_sent_{t}d', True)
    alert.last_alert_sent = now
    alert.updated_at = now
    db.commit()
    return alert


# --- Sync log and failures ---
def log_sync_result(db, carrier_id, source, success, old_data=None, new_data=None, changes=None,
                    error=None, response_time_ms=None, sync_type='full_profile'):
    entry = ApiSyncLog(
        carrier_id=carrier_id,
        api_source=source,
        sync_type=sync_type,
        old_data=old_data,
        new_data=new_data,
        changes_detected=changes or {},
        success=success,
        error_message=error,
        response_time_ms=response_time_ms,
    )
    db.add(entry)
    db.commit()
    return entry


def record_sync_failure(db, dot_number, source, error, response_time_ms=None):
    carrier = get_carrier(db, dot_number)
    if carrier is None:
        print(f"[SYNC] DOT {dot_number} not in database, failure not recorded")
        return None
    carrier.api_error_count = (carrier.api_error_count or 0) + 1
    carrier.api_sync_status = 'error'
    carrier.data_quality_score = calculate_data_quality_score(carrier, count_unresolved_issues(db, carrier.id))
    log_sync_result(db, carrier.id, source, False, error=error, response_time_ms=response_time_ms)
    return carrier


def count_unresolved_issues(db, carrier_id):
    return (db.query(func.count(DataQualityIssue.id))
            .filter(DataQualityIssue.carrier_id == carrier_id, DataQualityIssue.resolved.is_(False))
            .scalar()) or 0


def report_quality_issue(db, carrier_id, issue_type, severity, description, field_name=None,
                         expected_value=None, actual_value=None):
    issue = DataQualityIssue(
        carrier_id=carrier_id, issue_type=issue_type, severity=severity, description=description,
        field_name=field_name, expected_value=expected_value, actual_value=actual_value,
    )
    db.add(issue)
    db.commit()
    return issue


# --- Selection for refresh ---
def get_carriers_to_scrape(db, limit=50):
    query = carrier_only_query(db.query(Carrier.dot_number), Carrier)
    rows = (query.order_by(Carrier.last_verified.isnot(None), Carrier.last_verified)
            .limit(limit)
            .all())
    return [r.dot_number for r in rows]


def get_new_carriers(db, limit=20):
    rows = (db.query(Carrier.dot_number)
            .filter(Carrier.last_verified.is_(None), Carrier.data_source == 'manual')
            .order_by(Carrier.created_at.desc())
            .limit(limit)
            .all())
    return [r.dot_number for r in rows]


def get_carriers_needing_sync(db, limit=100, now=None):
    now = now or datetime.now()
    stale = now - timedelta(days=30)
    carriers = (db.query(Carrier)
                .filter(or_(Carrier.last_verified.is_(None),
                            Carrier.last_verified < stale,
                            Carrier.api_error_count > 0,
                            Carrier.needs_verification.is_(True)))
                .order_by(Carrier.last_verified.isnot(None), Carrier.last_verified,
                          Carrier.api_error_count.desc())
                .limit(limit)
                .all())
    results = []
    for c in carriers:
        days = (now - c.last_verified).days if c.last_verified else 999
        errors = c.api_error_count or 0
        if c.last_verified is None or days > 180:
            priority = 'high'
        elif days > 90 or errors > 3:
            priority = 'medium'
        else:
            priority = 'low'
        results.append({
            'carrier_id': c.id,
            'dot_number': c.dot_number,
            'legal_name': c.legal_name,
            'days_since_verification': days,
            'quality_score': c.data_quality_score,
            'priority': priority,
        })
    return results


def refresh_data_quality_scores(db, now=None):
    now = now or datetime.now()
    count = 0
    for carrier in db.query(Carrier).all():
        carrier.data_quality_score = calculate_data_quality_score(
            carrier, count_unresolved_issues(db, carrier.id), now=now)
        carrier.needs_verification = carrier.data_quality_score < 70
        count += 1
    db.commit()
    print(f"[DB] Refreshed data quality scores for {count} carriers")
    return count


# --- Refresh jobs ---
def start_refresh_job(db, job_type, metadata=None, now=None):
    job = DataRefreshJob(job_type=job_type, status='running', started_at=now or datetime.now(),
                         job_metadata=metadata or {})
    db.add(job)
    db.commit()
    return job


def update_refresh_job_progress(db, job, processed, metadata=None):
    job.carriers_processed = processed
    if metadata:
        job.job_metadata = {**(job.job_metadata or {}), **metadata}
    db.commit()


def finish_refresh_job(db, job, processed, updated, failed, errors=None, status=None, metadata=None, now=None):
    job.status = status or ('completed' if failed == 0 or updated > 0 else 'failed')
    job.carriers_processed = processed
    job.carriers_updated = updated
    job.carriers_failed = failed
    job.errors = list(errors or [])
    if metadata:
        job.job_metadata = {**(job.job_metadata or {}), **metadata}
    job.completed_at = now or datetime.now()
    db.commit()
    return job


def get_recent_jobs(db, limit=20):
    return db.query(DataRefreshJob).order_by(DataRefreshJob.created_at.desc(), DataRefreshJob.id.desc()).limit(limit).all()


def get_sync_overview(db, now=None):
    now = now or datetime.now()
    carriers = db.query(Carrier).filter(Carrier.data_quality_score.isnot(None)).all()
    scores = [c.data_quality_score for c in carriers]
    verified_days = [(now - c.last_verified).days if c.last_verified else None for c in carriers]
    issues = (db.query(DataQualityIssue.severity, func.count(DataQualityIssue.id))
              .filter(DataQualityIssue.resolved.is_(False))
              .group_by(DataQualityIssue.severity)
              .all())
    by_severity = dict(issues)
    return {
        'total_carriers': len(carriers),
        'high_quality': sum(1 for s in scores if s >= 80),
        'medium_quality': sum(1 for s in scores if 60 <= s < 80),
        'low_quality': sum(1 for s in scores if s < 60),
        'recently_synced': sum(1 for d in verified_days if d is not None and d <= 7),
        'needs_sync': sum(1 for d in verified_days if d is None or d > 30),
        'recent_jobs': get_recent_jobs(db, limit=5),
        'open_issues': {s: by_severity.get(s, 0) for s in ('critical', 'high', 'medium', 'low')},
    }


# --- User collections ---
def save_carrier(db, user_id, carrier_id, notes=None):
    saved = (db.query(SavedCarrier)
             .filter(SavedCarrier.user_id == user_id, SavedCarrier.carrier_id == carrier_id)
             .first())
    if saved is None:
        saved = SavedCarrier(user_id=user_id, carrier_id=carrier_id, notes=notes)
        db.add(saved)
    elif notes is not None:
        saved.notes = notes
    db.commit()
    return saved

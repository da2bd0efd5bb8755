from datetime import datetime, date

import pandas as pd

DEFAULT_TRUST_SCORES = {
    'fmcsa': 95,
    'manual': 50,
    'unknown': 25,
}

RATING_NUMERIC = {'satisfactory': 3, 'conditional': 2, 'unsatisfactory': 1}
RATING_BASE_RISK = {'satisfactory': 100, 'conditional': 60, 'unsatisfactory': 20, 'not-rated': 80}


def _get(carrier, key):
    if isinstance(carrier, dict):
        return carrier.get(key)
    return getattr(carrier, key, None)


def _to_datetime(value):
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value
    ts = pd.to_datetime(value, errors='coerce')
    if pd.isnull(ts):
        return None
    return ts.to_pydatetime().replace(tzinfo=None)


def _present(value):
    return value is not None and value != '' and value != 0


# --- Trust score ---
def calculate_trust_score(carrier, report_count=0, now=None):
    """
    Trust score (0-100) for a carrier row or dict.
    Factors: data source (40), verification (25), freshness (15),
    completeness (15) and a deduction of up to 5 for user reports.
    """
    now = now or datetime.now()
    factors = {
        'data_source': 0,
        'verification': 0,
        'data_freshness': 0,
        'data_completeness': 0,
        'user_reports': 0,
    }

    source = _get(carrier, 'data_source')
    if source == 'fmcsa':
        factors['data_source'] = 40
    elif source == 'manual':
        factors['data_source'] = 25
    else:
        factors['data_source'] = 15

    verified = _get(carrier, 'verified')
    if verified is True:
        factors['verification'] = 25
    elif verified is False:
        factors['verification'] = 10
    else:
        factors['verification'] = 5

    last_update = _to_datetime(_get(carrier, 'updated_at') or _get(carrier, 'created_at'))
    if last_update:
        hours_old = (now - last_update).total_seconds() / 3600
        if hours_old < 24:
            factors['data_freshness'] = 15
        elif hours_old < 168:
            factors['data_freshness'] = 12
        elif hours_old < 720:
            factors['data_freshness'] = 8
        elif hours_old < 2160:
            factors['data_freshness'] = 4
        else:
            factors['data_freshness'] = 1
    else:
        factors['data_freshness'] = 3

    required = ['legal_name', 'safety_rating', 'insurance_status', 'authority_status']
    optional = ['dba_name', 'physical_address', 'phone', 'vehicle_count']
    required_complete = sum(1 for f in required if _present(_get(carrier, f)))
    optional_complete = sum(1 for f in optional if _present(_get(carrier, f)))
    factors['data_completeness'] = round(required_complete / len(required) * 10 + optional_complete / len(optional) * 5)

    if report_count > 0:
        factors['user_reports'] = -min(report_count, 5)

    total = max(0, min(100, sum(factors.values())))
    return {'score': round(total), 'factors': factors}


def get_trust_score_description(score):
    if score >= 90:
        return 'Highly Trusted'
    if score >= 70:
        return 'Moderately Trusted'
    if score >= 50:
        return 'Basic Trust'
    return 'Low Trust'


def calculate_trust_scores(carriers, report_counts=None, now=None):
    report_counts = report_counts or {}
    results = []
    for carrier in carriers:
        result = calculate_trust_score(carrier, report_counts.get(_get(carrier, 'id'), 0), now=now)
        results.append({'carrier': carrier, 'trust_score': result['score'], 'factors': result['factors']})
    return results


# --- Data quality ---
def calculate_data_quality_score(carrier, unresolved_issues=0, now=None):
    now = now or datetime.now()
    score = 100

    last_verified = _to_datetime(_get(carrier, 'last_verified'))
    if last_verified is None:
        score -= 30
    else:
        days = (now - last_verified).days
        if days > 180:
            score -= 30
        elif days > 90:
            score -= 20
        elif days > 30:
            score -= 10

    errors = _get(carrier, 'api_error_count') or 0
    if errors > 5:
        score -= 25
    elif errors > 2:
        score -= 15
    elif errors > 0:
        score -= 5

    for field in ('safety_rating', 'insurance_status', 'authority_status', 'physical_address'):
        if not _get(carrier, field):
            score -= 5

    score -= {'saferwebapi': 5, 'manual': 10, 'import': 15}.get(_get(carrier, 'data_source'), 0)
    score -= min(unresolved_issues * 2, 10)
    return max(0, min(100, score))


# --- Safety rating history ---
def safety_stability_score(change_count, months_since_previous=None):
    score = max(0, 100 - change_count * 15)
    if months_since_previous is not None and months_since_previous > 12:
        score = min(100, score + 20)
    return score


def safety_rating_trend(history, now=None):
    """history: iterable of (old_rating, new_rating, change_date)."""
    now = now or datetime.now()
    cutoff = now - pd.DateOffset(months=12)
    deltas = []
    for old, new, changed in history:
        changed = _to_datetime(changed)
        if changed is None or changed < cutoff:
            continue
        delta = RATING_NUMERIC.get(new, 0) - RATING_NUMERIC.get(old, 0)
        if delta != 0:
            deltas.append(delta)
    if not deltas:
        return 'stable'
    total = sum(deltas)
    if total > 0:
        return 'improving'
    if total < 0:
        return 'declining'
    if len(deltas) > 2:
        return 'volatile'
    return 'stable'


def safety_rating_risk_score(rating, stability=None, trend=None, change_count=None, months_since_change=None):
    risk = RATING_BASE_RISK.get(rating, 50)
    if stability is not None:
        risk = (risk + stability) // 2
    if trend == 'improving':
        risk = min(100, risk + 10)
    elif trend == 'declining':
        risk = max(0, risk - 20)
    elif trend == 'volatile':
        risk = max(0, risk - 15)
    if change_count is not None and change_count > 3:
        risk = max(0, risk - change_count * 5)
    if months_since_change is not None and months_since_change > 24:
        risk = min(100, risk + 10)
    return max(0, min(100, risk))


# --- Insurance ---
def insurance_risk_score(expiry_date, last_verified=None, today=None):
    today = today or date.today()
    if expiry_date is None:
        return 10
    if isinstance(expiry_date, datetime):
        expiry_date = expiry_date.date()
    risk = 100
    days_left = (expiry_date - today).days
    if days_left < 0:
        risk = 0
    elif days_left <= 7:
        risk -= 50
    elif days_left <= 15:
        risk -= 30
    elif days_left <= 30:
        risk -= 15
    verified = _to_datetime(last_verified)
    if verified is not None:
        age = (datetime.combine(today, datetime.min.time()) - verified).days
        if age > 90:
            risk -= 20
        elif age > 30:
            risk -= 10
    else:
        risk -= 15
    return max(0, risk)


def months_between(later, earlier):
    later, earlier = _to_datetime(later), _to_datetime(earlier)
    if later is None or earlier is None:
        return None
    return (later - earlier).total_seconds() / (30 * 24 * 3600)

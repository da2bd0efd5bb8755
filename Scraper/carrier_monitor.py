from datetime import datetime, timedelta

from carrier_db import Carrier, MonitoringAlert, ApiSyncLog

ALERT_FIELDS = {
    'safety_rating': ['safety_rating'],
    'insurance': ['insurance_status'],
    'authority': ['authority_status'],
    'all': ['safety_rating', 'insurance_status', 'authority_status', 'legal_name'],
}
FIELD_LABELS = {
    'safety_rating': 'Safety Rating',
    'insurance_status': 'Insurance Status',
    'authority_status': 'Authority Status',
    'legal_name': 'Legal Name',
}


def add_monitoring_alert(db, user_id, carrier_id, alert_type='all'):
    if alert_type not in ALERT_FIELDS:
        raise ValueError(f"Unknown alert type: {alert_type}")
    alert = (db.query(MonitoringAlert)
             .filter(MonitoringAlert.user_id == user_id,
                     MonitoringAlert.carrier_id == carrier_id,
                     MonitoringAlert.alert_type == alert_type)
             .first())
    if alert is None:
        alert = MonitoringAlert(user_id=user_id, carrier_id=carrier_id, alert_type=alert_type)
        db.add(alert)
    alert.is_active = True
    db.commit()
    return alert


def deactivate_monitoring_alert(db, alert_id):
    alert = db.get(MonitoringAlert, alert_id)
    if alert is None:
        return False
    alert.is_active = False
    db.commit()
    return True


def collect_alert_changes(db, since=None):
    """
    Tracked-field changes recorded since `since` (default: last 24 hours) for carriers
    with active alerts, grouped by user id.
    """
    since = since or datetime.now() - timedelta(hours=24)
    alerts = (db.query(MonitoringAlert, Carrier)
              .join(Carrier, Carrier.id == MonitoringAlert.carrier_id)
              .filter(MonitoringAlert.is_active.is_(True))
              .all())
    if not alerts:
        print("[MONITOR] No active alerts found")
        return {}

    carrier_ids = {carrier.id for _, carrier in alerts}
    logs = (db.query(ApiSyncLog)
            .filter(ApiSyncLog.carrier_id.in_(carrier_ids),
                    ApiSyncLog.sync_type == 'data_update',
                    ApiSyncLog.success.is_(True),
                    ApiSyncLog.created_at >= since)
            .order_by(ApiSyncLog.created_at)
            .all())
    logs_by_carrier = {}
    for log in logs:
        logs_by_carrier.setdefault(log.carrier_id, []).append(log)

    by_user = {}
    for alert, carrier in alerts:
        fields = ALERT_FIELDS.get(alert.alert_type, [])
        changes = by_user.setdefault(alert.user_id, [])
        for log in logs_by_carrier.get(carrier.id, []):
            flags = log.changes_detected or {}
            old_data, new_data = log.old_data or {}, log.new_data or {}
            for field in fields:
                if not flags.get(f'{field}_changed'):
                    continue
                change = {
                    'carrier_id': carrier.id,
                    'carrier_name': carrier.legal_name,
                    'dot_number': carrier.dot_number,
                    'field': FIELD_LABELS[field],
                    'old_value': old_data.get(field),
                    'new_value': new_data.get(field),
                    'change_date': log.created_at,
                }
                # a user can hold several alert types on one carrier
                if change not in changes:
                    changes.append(change)

    result = {user: changes for user, changes in by_user.items() if changes}
    print(f"[MONITOR] {len(alerts)} active alerts checked, {sum(len(c) for c in result.values())} changes "
          f"for {len(result)} users")
    return result

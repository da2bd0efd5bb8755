import os
import csv
import asyncio
import argparse
import tempfile
from datetime import datetime, timedelta

import pandas as pd

from carrier_db import SessionLocal, init_db
from safer_scraper import bulk_scrape, get_carriers_to_scrape
from fmcsa_service import lookup_with_database, lookup_batch
from dot_sync_service import DOTSyncService
from enrich_insurance import enrich_carriers_async
from carrier_monitor import collect_alert_changes
from carrier_store import (
    get_new_carriers, refresh_data_quality_scores, get_expiring_insurance, pending_insurance_alerts,
    mark_insurance_alert_sent, get_recent_safety_rating_changes, get_sync_overview, get_recent_jobs,
    start_refresh_job, update_refresh_job_progress, finish_refresh_job,
)

REPORT_COLUMNS = [
    'dot_number', 'success', 'legal_name', 'entity_type', 'safety_rating', 'authority_status',
    'insurance_status', 'vehicle_count', 'driver_count', 'error',
]


def load_dot_numbers(path, column='dot_number', limit=None):
    df = pd.read_csv(path, dtype=str)
    if column not in df.columns:
        raise ValueError(f"Column '{column}' not found in {path} (columns: {', '.join(df.columns)})")
    dots = df[column].dropna().str.replace(r'\D', '', regex=True)
    dots = [d for d in dots.drop_duplicates() if d]
    return dots[:limit] if limit else dots


def write_report(results, path):
    rows = []
    for r in results:
        data = r.get('data') or {}
        row = {col: data.get(col, '') for col in REPORT_COLUMNS}
        row.update({'dot_number': r['dot_number'], 'success': r['success'], 'error': r.get('error') or ''})
        rows.append(row)
    df = pd.DataFrame(rows, columns=REPORT_COLUMNS).fillna('')
    for col in df.columns:
        df[col] = df[col].astype(str)
    # Atomic write for CSV
    target_dir = os.path.dirname(os.path.abspath(path))
    with tempfile.NamedTemporaryFile('w', delete=False, dir=target_dir, encoding='utf-8', newline='') as tf:
        writer = csv.DictWriter(tf, fieldnames=REPORT_COLUMNS, quoting=csv.QUOTE_ALL)
        writer.writeheader()
        for row in df.to_dict(orient='records'):
            writer.writerow(row)
        temp_csv = tf.name
    os.replace(temp_csv, path)
    print(f"[EXPORT] Wrote {len(df)} rows to {path} (atomic write)")


# --- Scraping ---
async def run_scrape_job(db, dot_numbers, job_type, report=None, metadata=None):
    job = start_refresh_job(db, job_type, {**(metadata or {}), 'total_count': len(dot_numbers)})

    def on_progress(current, total, dot_number):
        if current % 5 == 0 or current == total:
            update_refresh_job_progress(db, job, current, {
                'progress_percentage': round(current / total * 100),
                'current_dot': dot_number,
            })

    results = await bulk_scrape(dot_numbers, on_progress=on_progress, db=db)
    errors = [f"{r['dot_number']}: {r['error']}" for r in results['results'] if not r['success']]
    meta = {}
    if results['site_down']:
        errors.append(results['site_down_error'])
        meta['site_down'] = True
    finish_refresh_job(db, job, len(results['results']), results['successful'], results['failed'], errors,
                       status='failed' if results['site_down'] else None, metadata=meta)
    if report:
        write_report(results['results'], report)
    print(f"[SAFER] Job {job.id} {job.status}: {results['successful']} successful, {results['failed']} failed")
    return results


def cmd_init_db(args, db):
    init_db(db.get_bind())
    print("[DB] Tables created")


def cmd_scrape(args, db):
    asyncio.run(run_scrape_job(db, args.dot_numbers, 'bulk_scrape', report=args.report))


def cmd_bulk(args, db):
    dots = load_dot_numbers(args.input, args.column, args.limit)
    print(f"[SAFER] Loaded {len(dots)} DOT numbers from {args.input}")
    asyncio.run(run_scrape_job(db, dots, 'bulk_scrape', report=args.report, metadata={'input': args.input}))


def cmd_cron(args, db):
    if args.type == 'weekly':
        dots = get_carriers_to_scrape(db, args.limit * 3)
    elif args.type == 'new-carriers':
        dots = get_new_carriers(db, args.limit)
    else:
        dots = get_carriers_to_scrape(db, args.limit)
    meta = {'cron_type': args.type, 'max_carriers': args.limit, 'triggered_by': 'cron'}
    if not dots:
        job = start_refresh_job(db, f'cron_{args.type}', meta)
        finish_refresh_job(db, job, 0, 0, 0, status='completed', metadata={'message': 'No carriers found needing sync'})
        print("[SAFER] No carriers needed syncing")
        return
    print(f"[SAFER] Found {len(dots)} carriers to scrape")
    asyncio.run(run_scrape_job(db, dots, f'cron_{args.type}', metadata=meta))


# --- Multi-source sync ---
def run_sync(db, service, dot_numbers):
    if len(dot_numbers) == 1:
        job = start_refresh_job(db, 'single_carrier', {'dot_number': dot_numbers[0]})
        try:
            result = asyncio.run(service.sync_carrier(dot_numbers[0]))
        except Exception as e:
            finish_refresh_job(db, job, 1, 0, 1, [str(e)], status='failed')
            raise
        ok = result['success']
        finish_refresh_job(db, job, 1, int(ok), int(not ok), [] if ok else [result['error']])
        print(f"[SYNC] DOT {dot_numbers[0]}: {'synced from ' + result['source'] if ok else result['error']}")
        return result

    job = start_refresh_job(db, 'bulk_sync', {'dot_numbers': dot_numbers, 'total_count': len(dot_numbers)})
    results = asyncio.run(service.bulk_sync(dot_numbers))
    finish_refresh_job(db, job, len(dot_numbers), results['successful'], results['failed'], results['errors'])
    print(f"[SYNC] Bulk sync: {results['successful']} synced, {results['failed']} failed")
    for error in results['errors']:
        print(f"  {error}")
    return results


def cmd_sync(args, db):
    run_sync(db, DOTSyncService(session_factory=SessionLocal), args.dot_numbers)


def cmd_sync_stale(args, db):
    service = DOTSyncService(session_factory=SessionLocal)
    dots = [c['dot_number'] for c in service.get_carriers_needing_sync(args.limit)]
    if not dots:
        print("[SYNC] No carriers need syncing")
        return
    run_sync(db, service, dots)


def cmd_needs_sync(args, db):
    carriers = DOTSyncService(session_factory=SessionLocal).get_carriers_needing_sync(args.limit)
    for c in carriers:
        print(f"{c['dot_number']:>10}  {c['priority']:<6}  {c['days_since_verification']:>4}d  "
              f"q={c['quality_score']}  {c['legal_name']}")
    print(f"[SYNC] {len(carriers)} carriers need syncing")


# --- Lookup and enrichment ---
def cmd_lookup(args, db):
    if len(args.dot_numbers) > 1:
        result = asyncio.run(lookup_batch(db, args.dot_numbers, force_refresh=args.refresh))
        if not result['success']:
            print(f"[FMCSA][ERROR] {result['error']}")
            return
        for r in result['results']:
            name = (r.get('data') or {}).get('legal_name') or r.get('error')
            print(f"{r['dot_number']:>10}  {r.get('source', '-'):<8}  {name}")
        print(f"[FMCSA] {result['successful']} found, {result['failed']} failed")
        return

    result = asyncio.run(lookup_with_database(db, args.dot_numbers[0], force_refresh=args.refresh))
    if not result['success']:
        print(f"[FMCSA][ERROR] {result['error']}: {result.get('message', '')}")
        return
    print(f"[FMCSA] Source: {result['source']} (cached={result['cached']}, fresh={result['freshness']['is_fresh']})")
    for key, value in result['data'].items():
        if value not in (None, '', []):
            print(f"  {key}: {value}")


def cmd_enrich(args, db):
    job = start_refresh_job(db, 'insurance_enrichment', {'dot_numbers': args.dot_numbers})
    results = asyncio.run(enrich_carriers_async(args.dot_numbers, db))
    finish_refresh_job(db, job, len(args.dot_numbers), results['successful'], results['failed'], results['errors'])


# --- Quality and monitoring ---
def cmd_refresh_quality(args, db):
    count = refresh_data_quality_scores(db)
    print(f"[DB] {count} carriers updated")


def cmd_overview(args, db):
    stats = get_sync_overview(db)
    print(f"Carriers: {stats['total_carriers']} (high {stats['high_quality']}, medium {stats['medium_quality']}, "
          f"low {stats['low_quality']})")
    print(f"Recently synced: {stats['recently_synced']}  Needs sync: {stats['needs_sync']}")
    print("Open issues: " + ', '.join(f"{k} {v}" for k, v in stats['open_issues'].items()))
    for job in stats['recent_jobs']:
        print(f"  job {job.id} {job.job_type} {job.status} ({job.carriers_updated}/{job.carriers_processed})")


def cmd_jobs(args, db):
    for job in get_recent_jobs(db, args.limit):
        print(f"{job.id:>5}  {job.job_type:<22} {job.status:<10} processed={job.carriers_processed} "
              f"updated={job.carriers_updated} failed={job.carriers_failed} started={job.started_at}")


def cmd_expiring(args, db):
    rows = get_expiring_insurance(db, args.days)
    for r in rows:
        print(f"{r['dot_number']:>10}  {r['expiry_date']}  ({r['days_until_expiry']}d)  {r['legal_name']}")
    print(f"[DB] {len(rows)} carriers with insurance expiring in {args.days} days")


def cmd_insurance_alerts(args, db):
    pending = pending_insurance_alerts(db)
    for alert in pending:
        print(f"{alert['dot_number']:>10}  {alert['threshold']}d threshold  expires {alert['expiry_date']}  "
              f"{alert['legal_name']}")
        if args.mark:
            mark_insurance_alert_sent(db, alert['alert_id'], alert['threshold'])
    print(f"[MONITOR] {len(pending)} insurance alerts pending{' (marked sent)' if args.mark and pending else ''}")


def cmd_alerts(args, db):
    changes = collect_alert_changes(db, datetime.now() - timedelta(hours=args.hours))
    for user_id, user_changes in changes.items():
        print(f"{user_id}:")
        for c in user_changes:
            print(f"  {c['carrier_name']} (DOT {c['dot_number']}) {c['field']}: {c['old_value']} -> {c['new_value']}")


def cmd_safety_changes(args, db):
    for c in get_recent_safety_rating_changes(db, args.days):
        print(f"{c['dot_number']:>10}  {c['change_date']:%Y-%m-%d}  {c['old_rating']} -> {c['new_rating']}  "
              f"{c['legal_name']}")


def build_parser():
    parser = argparse.ArgumentParser(prog='carriertracker', description='SAFER carrier data tools')
    sub = parser.add_subparsers(dest='command', required=True)

    sub.add_parser('init-db', help='Create database tables').set_defaults(func=cmd_init_db)

    p = sub.add_parser('scrape', help='Scrape carriers from SAFER by DOT number')
    p.add_argument('dot_numbers', nargs='+')
    p.add_argument('--report', help='Write a CSV report')
    p.set_defaults(func=cmd_scrape)

    p = sub.add_parser('bulk', help='Scrape DOT numbers listed in a CSV file')
    p.add_argument('--input', required=True, help='CSV file with DOT numbers')
    p.add_argument('--column', default='dot_number', help='Column holding DOT numbers (default: dot_number)')
    p.add_argument('--limit', type=int, help='Only scrape the first N DOT numbers')
    p.add_argument('--report', help='Write a CSV report')
    p.set_defaults(func=cmd_bulk)

    p = sub.add_parser('cron', help='Scheduled scrape of stale or new carriers')
    p.add_argument('--type', choices=['daily', 'weekly', 'new-carriers'], default='daily')
    p.add_argument('--limit', type=int, default=20)
    p.set_defaults(func=cmd_cron)

    p = sub.add_parser('sync', help='Sync carriers through all data sources')
    p.add_argument('dot_numbers', nargs='+')
    p.set_defaults(func=cmd_sync)

    p = sub.add_parser('sync-stale', help='Sync carriers that need verification')
    p.add_argument('--limit', type=int, default=100)
    p.set_defaults(func=cmd_sync_stale)

    p = sub.add_parser('needs-sync', help='List carriers that need verification')
    p.add_argument('--limit', type=int, default=100)
    p.set_defaults(func=cmd_needs_sync)

    p = sub.add_parser('lookup', help='Database-first FMCSA lookup')
    p.add_argument('dot_numbers', nargs='+')
    p.add_argument('--refresh', action='store_true', help='Skip the database and query FMCSA')
    p.set_defaults(func=cmd_lookup)

    p = sub.add_parser('enrich', help='Enrich insurance details from L&I')
    p.add_argument('dot_numbers', nargs='+')
    p.set_defaults(func=cmd_enrich)

    sub.add_parser('refresh-quality', help='Recompute data quality scores').set_defaults(func=cmd_refresh_quality)
    sub.add_parser('overview', help='Data sync overview').set_defaults(func=cmd_overview)

    p = sub.add_parser('jobs', help='Recent refresh jobs')
    p.add_argument('--limit', type=int, default=20)
    p.set_defaults(func=cmd_jobs)

    p = sub.add_parser('expiring', help='Carriers with insurance expiring soon')
    p.add_argument('--days', type=int, default=30)
    p.set_defaults(func=cmd_expiring)

    p = sub.add_parser('insurance-alerts', help='Pending insurance expiry alerts')
    p.add_argument('--mark', action='store_true', help='Mark listed alerts as sent')
    p.set_defaults(func=cmd_insurance_alerts)

    p = sub.add_parser('alerts', help='Changes for users with active monitoring alerts')
    p.add_argument('--hours', type=int, default=24)
    p.set_defaults(func=cmd_alerts)

    p = sub.add_parser('safety-changes', help='Recent safety rating changes')
    p.add_argument('--days', type=int, default=30)
    p.set_defaults(func=cmd_safety_changes)
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    db = SessionLocal()
    try:
        if args.command != 'init-db':
            init_db(db.get_bind())
        args.func(args, db)
    finally:
        db.close()


if __name__ == "__main__":
    main()

import asyncio
from datetime import datetime

import aiohttp
from sqlalchemy.exc import SQLAlchemyError

from tracker_config import REQUEST_DELAY, MAX_RETRIES
from safer_fetch import FetchError, create_session, post_carrier_snapshot, save_debug_html
from safer_parser import classify_snapshot_page, parse_carrier_html
from carrier_filter import is_carrier_entity
import carrier_store
from carrier_store import upsert_carrier

SITE_DOWN = 'SAFER site down'


async def scrape_carrier(session, dot_number):
    """
    Scrape one carrier's Company Snapshot from SAFER.
    Returns {success, data} or {success: False, error, http_status?, rate_limited?}.
    """
    dot_number = str(dot_number).strip()
    html = None
    last_error = None
    for attempt in range(1, MAX_RETRIES + 1):
        print(f"[SAFER] Scraping DOT {dot_number}, attempt {attempt}/{MAX_RETRIES}")
        try:
            html = await post_carrier_snapshot(session, dot_number)
            break
        except FetchError as e:
            last_error = e
            retryable = e.rate_limited or (e.http_status or 0) >= 500
            if not retryable:
                print(f"[SAFER] {e} for DOT {dot_number}")
                return {'success': False, 'error': str(e), 'http_status': e.http_status}
            print(f"[SAFER][RETRY] {e} for DOT {dot_number} (attempt {attempt})")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            last_error = e
            print(f"[SAFER][RETRY] Network error for DOT {dot_number} (attempt {attempt}): {e!r}")
        if attempt < MAX_RETRIES:
            await asyncio.sleep(REQUEST_DELAY * attempt)

    if html is None:
        if isinstance(last_error, FetchError) and last_error.rate_limited:
            print(f"[SAFER][ERROR] Rate limited on DOT {dot_number} after {MAX_RETRIES} attempts")
            return {'success': False, 'error': str(last_error), 'http_status': 429, 'rate_limited': True}
        message = str(last_error) or type(last_error).__name__
        print(f"[SAFER][ERROR] Giving up on DOT {dot_number} after {MAX_RETRIES} attempts: {message}")
        result = {'success': False, 'error': f'{SITE_DOWN}: {message}'}
        if isinstance(last_error, FetchError):
            result['http_status'] = last_error.http_status
        return result

    try:
        error = classify_snapshot_page(html)
        if error:
            print(f"[SAFER] DOT {dot_number} - {error}")
            save_debug_html(f"safer_{dot_number}_unusable", html)
            return {'success': False, 'error': error}

        data = parse_carrier_html(html, dot_number)
        name = data.get('legal_name')
        if not name or len(name) > 200:
            print(f"[SAFER] DOT {dot_number} - Invalid legal name extracted: {name}")
            save_debug_html(f"safer_{dot_number}_noname", html)
            return {'success': False, 'error': 'Could not extract valid company name'}

        print(f"[SAFER] Successfully parsed data for DOT {dot_number}: {name}")
        return {'success': True, 'data': data}
    except Exception as e:
        print(f"[SAFER][ERROR] Error scraping DOT {dot_number}: {e}")
        save_debug_html(f"safer_{dot_number}_error", html)
        return {'success': False, 'error': str(e)}


def update_carrier_in_database(db, data, now=None):
    if not is_carrier_entity(data):
        print(f"[DB] Skipping non-carrier entity {data.get('dot_number')} ({data.get('entity_type')}): "
              f"{data.get('legal_name')}")
        return None
    now = now or datetime.now()
    try:
        carrier, _ = upsert_carrier(db, data, 'safer_scraper', now=now, extra={'last_verified': now})
        print(f"[DB] Successfully updated carrier {data['dot_number']} in database")
        return carrier
    except SQLAlchemyError as e:
        db.rollback()
        print(f"[DB][ERROR] Database update failed for {data.get('dot_number')}: {e}")
        return None


async def bulk_scrape(dot_numbers, on_progress=None, db=None, session=None):
    """
    Scrape DOT numbers one after another with REQUEST_DELAY between requests.
    Aborts the batch when SAFER looks down. Successful rows are written to `db` right away.
    """
    results = {'successful': 0, 'failed': 0, 'results': [], 'site_down': False, 'site_down_error': None}
    total = len(dot_numbers)
    print(f"[SAFER] Starting bulk scrape of {total} carriers")

    own_session = session is None
    if own_session:
        session = create_session()
    try:
        for i, dot_number in enumerate(dot_numbers):
            if on_progress:
                on_progress(i + 1, total, dot_number)
            try:
                result = await scrape_carrier(session, dot_number)
                if result.get('error') and SITE_DOWN in result['error']:
                    results['site_down'] = True
                    results['site_down_error'] = result['error']
                    print("[SAFER][ERROR] SAFER site appears to be down. Aborting bulk scrape.")
                    break
                if result['success']:
                    results['successful'] += 1
                    results['results'].append({'dot_number': dot_number, 'success': True, 'data': result['data']})
                    if db is not None:
                        update_carrier_in_database(db, result['data'])
                else:
                    results['failed'] += 1
                    results['results'].append({'dot_number': dot_number, 'success': False, 'error': result['error']})
            except Exception as e:
                results['failed'] += 1
                results['results'].append({'dot_number': dot_number, 'success': False, 'error': str(e)})

            if (i + 1) % 10 == 0 or i == total - 1:
                print(f"[SAFER] Progress: {i + 1}/{total} carriers processed "
                      f"({results['successful']} successful, {results['failed']} failed)")
            if i < total - 1:
                await asyncio.sleep(REQUEST_DELAY)
    finally:
        if own_session:
            await session.close()

    print(f"[SAFER] Bulk scrape completed: {results['successful']} successful, {results['failed']} failed")
    return results


def get_carriers_to_scrape(db, limit=50):
    """DOT numbers of carriers, never-verified first, then least recently verified."""
    try:
        return carrier_store.get_carriers_to_scrape(db, limit)
    except SQLAlchemyError as e:
        print(f"[DB][ERROR] Failed to get carriers to scrape: {e}")
        return []

import time
import asyncio
from datetime import datetime

import aiohttp
from sqlalchemy.exc import SQLAlchemyError

from tracker_config import (
    SAFER_WEB_API_URL, SAFER_WEB_API_KEY, FMCSA_API_URL, FMCSA_WEB_KEY, SYNC_DELAY,
)
from carrier_db import SessionLocal
from safer_fetch import FetchError, create_session, fetch_json
from safer_parser import normalize_safety_rating, normalize_status, parse_int
from safer_scraper import scrape_carrier
from carrier_store import (
    CARRIER_COLUMNS, get_carrier, upsert_carrier, log_sync_result, record_sync_failure,
    get_carriers_needing_sync,
)


def _elapsed_ms(start):
    return int((time.monotonic() - start) * 1000)


def _first(raw, *keys):
    for key in keys:
        value = raw.get(key)
        if value not in (None, ''):
            return value
    return None


# --- Normalization ---
def normalize_carrier_data(raw, source):
    """Maps one source's payload onto carrier column names."""
    normalized = {'dot_number': str(_first(raw, 'dot_number', 'usdot', 'dotNumber') or '')}

    if source == 'saferwebapi':
        normalized.update({
            'legal_name': _first(raw, 'legalName', 'legal_name'),
            'dba_name': _first(raw, 'dbaName', 'dba_name'),
            'safety_rating': normalize_safety_rating(_first(raw, 'safetyRating', 'safety_rating')),
            'insurance_status': normalize_status(_first(raw, 'insuranceStatus', 'insurance_status')),
            'authority_status': normalize_status(_first(raw, 'authorityStatus', 'authority_status')),
            'physical_address': _first(raw, 'physicalAddress', 'address'),
            'phone': _first(raw, 'phone', 'phoneNumber'),
            'state': _first(raw, 'state', 'physicalState'),
            'city': _first(raw, 'city', 'physicalCity'),
            'vehicle_count': parse_int(_first(raw, 'vehicleCount', 'powerUnits')),
        })
    elif source == 'fmcsa_api':
        content = raw.get('content') or {}
        carrier = content.get('carrier') or raw.get('carrier') or {}
        if not normalized['dot_number'] and carrier.get('dotNumber'):
            normalized['dot_number'] = str(carrier['dotNumber'])
        normalized.update({
            'legal_name': carrier.get('legalName'),
            'dba_name': carrier.get('dbaName'),
            'safety_rating': normalize_safety_rating(carrier.get('safetyRating')),
            'insurance_status': normalize_status(carrier.get('insuranceRequired')),
            'authority_status': normalize_status(carrier.get('allowedToOperate')),
            'physical_address': carrier.get('phyStreet'),
            'city': carrier.get('phyCity'),
            'state': carrier.get('phyState'),
            'vehicle_count': parse_int(carrier.get('totalPowerUnits')),
            'driver_count': parse_int(carrier.get('totalDrivers')),
        })
    elif source == 'safer_scraper':
        normalized.update({k: v for k, v in raw.items() if k != 'dot_number'})
        normalized['safety_rating'] = normalize_safety_rating(raw.get('safety_rating'))
        normalized['insurance_status'] = normalize_status(raw.get('insurance_status'))
        normalized['authority_status'] = normalize_status(raw.get('authority_status'))

    return {k: v for k, v in normalized.items() if v is not None}


class DOTSyncService:
    def __init__(self, session_factory=SessionLocal, scraper=scrape_carrier):
        self.session_factory = session_factory
        self.scraper = scraper

    # --- Sources ---
    async def fetch_from_safer_web_api(self, session, dot_number):
        start = time.monotonic()
        if not SAFER_WEB_API_KEY:
            return {'success': False, 'error': 'SaferWebAPI key not configured', 'source': 'saferwebapi',
                    'response_time': 0}
        try:
            headers = {'Authorization': f'Bearer {SAFER_WEB_API_KEY}', 'Content-Type': 'application/json'}
            raw = await fetch_json(session, SAFER_WEB_API_URL.format(dot=dot_number), headers=headers,
                                   label='SaferWebAPI')
            raw.setdefault('dot_number', dot_number)
            return {'success': True, 'data': normalize_carrier_data(raw, 'saferwebapi'), 'source': 'saferwebapi',
                    'response_time': _elapsed_ms(start)}
        except (FetchError, aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            return {'success': False, 'error': str(e) or type(e).__name__, 'source': 'saferwebapi',
                    'response_time': _elapsed_ms(start)}

    async def fetch_from_safer_scraper(self, session, dot_number):
        start = time.monotonic()
        result = await self.scraper(session, dot_number)
        if not result['success']:
            return {'success': False, 'error': result.get('error'), 'source': 'safer_scraper',
                    'response_time': _elapsed_ms(start)}
        return {'success': True, 'data': normalize_carrier_data(result['data'], 'safer_scraper'),
                'source': 'safer_scraper', 'response_time': _elapsed_ms(start)}

    async def fetch_from_fmcsa_api(self, session, dot_number):
        start = time.monotonic()
        try:
            params = {'webKey': FMCSA_WEB_KEY} if FMCSA_WEB_KEY else None
            raw = await fetch_json(session, FMCSA_API_URL.format(dot=dot_number), params=params, label='FMCSA API')
            raw.setdefault('dot_number', dot_number)
            data = normalize_carrier_data(raw, 'fmcsa_api')
            if not data.get('legal_name'):
                return {'success': False, 'error': 'FMCSA API returned no carrier', 'source': 'fmcsa_api',
                        'response_time': _elapsed_ms(start)}
            return {'success': True, 'data': data, 'source': 'fmcsa_api', 'response_time': _elapsed_ms(start)}
        except FetchError as e:
            return {'success': False, 'error': str(e), 'source': 'fmcsa_api', 'response_time': _elapsed_ms(start)}
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError):
            return {'success': False, 'error': 'FMCSA API currently unavailable', 'source': 'fmcsa_api',
                    'response_time': _elapsed_ms(start)}

    # --- Sync ---
    async def sync_carrier(self, dot_number, session=None):
        """Tries each source in order; the first success is written to the database."""
        dot_number = str(dot_number).strip()
        start = time.monotonic()
        fetchers = [
            ('saferwebapi', self.fetch_from_safer_web_api),
            ('safer_scraper', self.fetch_from_safer_scraper),
            ('fmcsa_api', self.fetch_from_fmcsa_api),
        ]
        errors = []

        own_session = session is None
        if own_session:
            session = create_session()
        try:
            for name, fetch in fetchers:
                try:
                    result = await fetch(session, dot_number)
                    if result['success'] and result.get('data'):
                        self.update_carrier_data(dot_number, result['data'], result['source'],
                                                 result.get('response_time'))
                        print(f"[SYNC] DOT {dot_number} synced from {result['source']}")
                        return {**result, 'response_time': _elapsed_ms(start)}
                    errors.append(f"{result['source']}: {result.get('error')}")
                    print(f"[SYNC] DOT {dot_number} - {result['source']} failed: {result.get('error')}")
                except Exception as e:
                    errors.append(f"{name}: {e}")
                    print(f"[SYNC][ERROR] {name} failed for DOT {dot_number}: {e}")
        finally:
            if own_session:
                await session.close()

        elapsed = _elapsed_ms(start)
        db = self.session_factory()
        try:
            record_sync_failure(db, dot_number, 'none', '; '.join(errors) or 'All data sources failed', elapsed)
        except SQLAlchemyError as e:
            db.rollback()
            print(f"[DB][ERROR] Failed to record sync failure for DOT {dot_number}: {e}")
        finally:
            db.close()
        return {'success': False, 'error': 'All data sources failed', 'source': 'none', 'response_time': elapsed}

    def update_carrier_data(self, dot_number, data, source, response_time=None):
        db = self.session_factory()
        old_data = None
        try:
            existing = get_carrier(db, dot_number)
            if existing is not None:
                old_data = {k: getattr(existing, k) for k in data if k in CARRIER_COLUMNS}
            now = datetime.now()
            extra = {
                'last_verified': now,
                'api_last_sync': now,
                'api_sync_status': 'synced',
                'api_error_count': 0,
            }
            carrier, changes = upsert_carrier(db, {**data, 'dot_number': dot_number}, source, now=now, extra=extra)
            log_sync_result(db, carrier.id, source, True, old_data=_jsonable(old_data), new_data=_jsonable(data),
                            changes={f'{f}_changed': True for f in changes}, response_time_ms=response_time)
        except Exception as e:
            db.rollback()
            print(f"[DB][ERROR] Failed to update carrier {dot_number} from {source}: {e}")
            try:
                carrier = get_carrier(db, dot_number)
                if carrier is not None:
                    log_sync_result(db, carrier.id, source, False, error=str(e), response_time_ms=response_time)
            except SQLAlchemyError as log_error:
                db.rollback()
                print(f"[DB][ERROR] Failed to log sync result: {log_error}")
            raise
        finally:
            db.close()

    async def bulk_sync(self, dot_numbers, on_progress=None):
        results = {'successful': 0, 'failed': 0, 'errors': []}
        total = len(dot_numbers)
        async with create_session() as session:
            for i, dot_number in enumerate(dot_numbers):
                try:
                    result = await self.sync_carrier(dot_number, session=session)
                    if result['success']:
                        results['successful'] += 1
                    else:
                        results['failed'] += 1
                        results['errors'].append(f"{dot_number}: {result['error']}")
                except Exception as e:
                    results['failed'] += 1
                    results['errors'].append(f"{dot_number}: {e}")
                if on_progress:
                    on_progress(i + 1, total)
                if (i + 1) % 10 == 0 or i == total - 1:
                    print(f"[SYNC] Progress: {i + 1}/{total} ({results['successful']} synced, {results['failed']} failed)")
                await asyncio.sleep(SYNC_DELAY)
        return results

    def get_carriers_needing_sync(self, limit=100):
        db = self.session_factory()
        try:
            return get_carriers_needing_sync(db, limit=limit)
        finally:
            db.close()


def _jsonable(data):
    if data is None:
        return None
    out = {}
    for key, value in data.items():
        if hasattr(value, 'isoformat'):
            value = value.isoformat()
        elif value is not None and not isinstance(value, (str, int, float, bool, list, dict)):
            value = str(value)
        out[key] = value
    return out

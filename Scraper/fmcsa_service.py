import re
import time
import asyncio
from datetime import datetime

import aiohttp
from bs4 import BeautifulSoup
from sqlalchemy.exc import SQLAlchemyError

from tracker_config import (
    CACHE_TTL_SECONDS, USE_BROWSER_FALLBACK, FMCSA_STALE_HOURS, MANUAL_STALE_HOURS, SYNC_DELAY,
)
from safer_fetch import (
    FetchError, create_session, get_query_snapshot, get_company_snapshot, render_company_snapshot,
)
from safer_parser import clean_text, normalize_safety_rating
from trust_score import calculate_trust_score, DEFAULT_TRUST_SCORES
from carrier_store import get_carrier, upsert_carrier, carrier_to_dict

SCRIPTING_NOTICE = 'This page requires scripting to be enabled'
FORM_CHROME = ['Query Result', 'SAFER Table Layout', 'Enter Value']
CELL_CHROME = FORM_CHROME + ['Information', 'USDOT Number', 'MC/MX Number']
MAX_BATCH_LOOKUP = 10


# --- Lookup page parsing ---
def _lookup_value(soup, label):
    # SAFER rows look like <th class="querylabelbkg">Label:</th><td class="queryfield">value</td>
    for th in soup.find_all('th', class_='querylabelbkg'):
        text = th.get_text(strip=True)
        if text == label + ':' or text == label or label in text:
            row = th.find_parent('tr')
            cell = th.find_next_sibling('td', class_='queryfield') or (row.find('td', class_='queryfield') if row else None)
            if cell:
                value = cell.get_text(' ', strip=True)
                if value and not any(c in value for c in FORM_CHROME):
                    return value
            break

    for cell in soup.find_all(['th', 'td']):
        if label not in cell.get_text() or cell.find('table'):
            continue
        row = cell.find_parent('tr')
        if row is None:
            continue
        for td in row.find_all('td', recursive=False):
            if label in td.get_text():
                continue
            value = td.get_text(' ', strip=True)
            if not value or len(value) > 200 or any(c in value for c in CELL_CHROME):
                return None
            return value
        return None
    return None


def _map_operating_status(status):
    lowered = status.lower()
    if 'not authorized' in lowered or 'out' in lowered or 'inactive' in lowered:
        return 'Inactive'
    if 'authorized' in lowered or 'active' in lowered:
        return 'Active'
    return 'Unknown'


def _count(text):
    text = clean_text(text)
    if not text:
        return None
    try:
        value = int(text.replace(',', ''))
    except ValueError:
        return None
    return value if value > 0 else None


def parse_title_fallback(soup):
    title = soup.title.get_text() if soup.title else ''
    m = re.search(r'SAFER Web - Company Snapshot\s+(.+)', title, re.I)
    if not m:
        return None
    name = m.group(1).strip()
    if not name or name == 'USDOT' or 'INACTIVE' in name or len(name) <= 3:
        return None
    return name


def parse_lookup_html(html, dot_number):
    """Carrier fields from a SAFER query/snapshot page, or None when no name can be found."""
    soup = BeautifulSoup(html, 'html.parser')
    data = {
        'dot_number': str(dot_number),
        'data_source': 'fmcsa',
        'last_updated': datetime.now().isoformat(),
    }

    if SCRIPTING_NOTICE in html and 'Legal Name' not in html:
        name = parse_title_fallback(soup)
        if name:
            data.update({
                'legal_name': name,
                'safety_rating': 'not-rated',
                'insurance_status': 'Unknown',
                'authority_status': 'Unknown',
            })
            print(f"[FMCSA] Extracted company name from title: {name}")
    else:
        name = clean_text(_lookup_value(soup, 'Legal Name'))
        if name and name != ':' and len(name) > 2:
            data['legal_name'] = name
        dba = clean_text(_lookup_value(soup, 'DBA Name'))
        if dba and dba != ':' and len(dba) > 2:
            data['dba_name'] = dba
        address = clean_text(_lookup_value(soup, 'Physical Address'))
        if address and address != ':' and len(address) > 3:
            data['physical_address'] = address
        phone = clean_text(_lookup_value(soup, 'Phone'))
        if phone and phone != ':' and len(phone) > 5:
            data['phone'] = phone

        rating = clean_text(_lookup_value(soup, 'Safety Rating'))
        if rating and 'does not necessarily' not in rating.lower() and len(rating) < 20:
            data['safety_rating'] = normalize_safety_rating(rating)

        status = clean_text(_lookup_value(soup, 'Operating Authority Status') or _lookup_value(soup, 'Operating Status'))
        if status and status != ':' and len(status) < 50 and 'For Licensing' not in status:
            data['operating_status'] = status
            data['insurance_status'] = data['authority_status'] = _map_operating_status(status)

        mc_text = clean_text(_lookup_value(soup, 'MC/MX/FF Number(s)'))
        if mc_text:
            m = re.search(r'MC-(\d+)', mc_text)
            data['mc_number'] = f'MC-{m.group(1)}' if m else mc_text

        power_units = _count(_lookup_value(soup, 'Power Units'))
        if power_units:
            data['power_units'] = power_units
        drivers = _count(_lookup_value(soup, 'Drivers'))
        if drivers:
            data['drivers'] = drivers

    if not data.get('legal_name') and not data.get('dba_name'):
        print(f"[FMCSA][WARN] No carrier name found for DOT {dot_number} (keys: {', '.join(data)})")
        m = re.search(r'Company Snapshot[^>]*?\s+(\w+[^<\n\r]{10,})', html, re.I)
        if m:
            possible = m.group(1).strip()
            if 5 < len(possible) < 100:
                data['legal_name'] = possible
                print(f"[FMCSA] Extracted name from snapshot header: {possible}")
        if not data.get('legal_name'):
            return None
    return data


# --- Service ---
class FMCSAService:
    def __init__(self, cache_ttl=CACHE_TTL_SECONDS, use_browser=USE_BROWSER_FALLBACK):
        self.cache_ttl = cache_ttl
        self.use_browser = use_browser
        self._cache = {}

    @staticmethod
    def is_valid_dot_number(dot_number):
        cleaned = re.sub(r'\D', '', str(dot_number or ''))
        return 6 <= len(cleaned) <= 8

    def _get_cached(self, dot_number):
        entry = self._cache.get(dot_number)
        if entry is None:
            return None
        data, stored_at = entry
        if time.time() - stored_at < self.cache_ttl:
            return data
        del self._cache[dot_number]
        return None

    def _set_cached(self, dot_number, data):
        self._cache[dot_number] = (data, time.time())

    def clear_cache(self):
        self._cache.clear()

    def get_cache_stats(self):
        return {'size': len(self._cache), 'entries': list(self._cache)}

    async def lookup_carrier(self, dot_number, session=None):
        try:
            if not self.is_valid_dot_number(dot_number):
                return {'success': False, 'data': None, 'error': 'Invalid DOT number format', 'source': 'fmcsa'}
            dot_number = str(dot_number)

            cached = self._get_cached(dot_number)
            if cached:
                return {'success': True, 'data': cached, 'cached': True, 'source': 'cache'}

            own_session = session is None
            if own_session:
                session = create_session()
            try:
                data = await self.fetch_from_fmcsa(session, dot_number)
            finally:
                if own_session:
                    await session.close()

            if data:
                self._set_cached(dot_number, data)
                return {'success': True, 'data': data, 'source': 'fmcsa'}
            return {'success': False, 'data': None, 'error': 'Carrier not found in FMCSA database', 'source': 'fmcsa'}
        except Exception as e:
            print(f"[FMCSA][ERROR] Lookup error for DOT {dot_number}: {e}")
            return {'success': False, 'data': None, 'error': str(e) or type(e).__name__, 'source': 'fmcsa'}

    async def fetch_from_fmcsa(self, session, dot_number):
        try:
            html = await get_query_snapshot(session, dot_number)
        except (FetchError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            print(f"[FMCSA][ERROR] Query interface failed for DOT {dot_number}: {e}")
            try:
                html = await get_company_snapshot(session, dot_number)
            except Exception as fallback_error:
                print(f"[FMCSA][ERROR] Company snapshot fallback also failed: {fallback_error}")
                raise e

        if self.use_browser and SCRIPTING_NOTICE in html and 'Legal Name' not in html:
            print(f"[FMCSA] DOT {dot_number} needs scripting, rendering in browser")
            try:
                html = await render_company_snapshot(dot_number)
            except Exception as e:
                print(f"[FMCSA][ERROR] Browser render failed for DOT {dot_number}: {e}")
        return parse_lookup_html(html, dot_number)


def map_fmcsa_to_carrier_data(data, now=None):
    now = now or datetime.now()
    mapped = {
        'dot_number': data['dot_number'],
        'legal_name': data.get('legal_name'),
        'dba_name': data.get('dba_name'),
        'physical_address': data.get('physical_address'),
        'phone': data.get('phone'),
        'safety_rating': data.get('safety_rating') or 'not-rated',
        'insurance_status': data.get('insurance_status') or 'Unknown',
        'authority_status': data.get('authority_status') or 'Unknown',
        'operating_status': data.get('operating_status'),
        'mc_number': data.get('mc_number'),
        'vehicle_count': data.get('power_units'),
        'driver_count': data.get('drivers'),
        'data_source': 'fmcsa',
        'verified': True,
        'verification_date': now,
        'updated_at': now,
    }
    try:
        mapped['trust_score'] = calculate_trust_score(mapped, now=now)['score']
    except Exception as e:
        print(f"[FMCSA][WARN] Trust score calculation failed, using default: {e}")
        mapped['trust_score'] = DEFAULT_TRUST_SCORES['fmcsa']
    return mapped


# --- Database-first lookup ---
def _hours_since(value, now):
    if value is None:
        return float('inf')
    return (now - value).total_seconds() / 3600


async def lookup_with_database(db, dot_number, force_refresh=False, service=None, session=None, now=None):
    """
    Local row first when fresh (7 days for FMCSA-sourced rows, 30 days otherwise),
    else an FMCSA lookup written back to the database.
    """
    if not dot_number:
        return {'success': False, 'error': 'DOT number is required'}
    clean_dot = re.sub(r'\D', '', str(dot_number))
    if len(clean_dot) < 6:
        return {'success': False, 'error': 'Invalid DOT number format',
                'message': 'DOT number must be at least 6 digits'}

    now = now or datetime.now()
    service = service or FMCSAService()
    carrier_data = None
    from_database = False

    if not force_refresh:
        existing = get_carrier(db, clean_dot)
        if existing is not None:
            threshold = FMCSA_STALE_HOURS if existing.data_source == 'fmcsa' else MANUAL_STALE_HOURS
            if _hours_since(existing.updated_at, now) < threshold:
                carrier_data = carrier_to_dict(existing)
                from_database = True

    response = None
    if carrier_data is None:
        print(f"[FMCSA] Fetching carrier {clean_dot} from FMCSA...")
        response = await service.lookup_carrier(clean_dot, session=session)
        if response['success'] and response['data']:
            mapped = map_fmcsa_to_carrier_data(response['data'], now=now)
            try:
                carrier, _ = upsert_carrier(db, mapped, 'fmcsa', now=now)
                carrier_data = carrier_to_dict(carrier)
            except SQLAlchemyError as e:
                db.rollback()
                print(f"[DB][ERROR] Error updating carrier {clean_dot} in database: {e}")
                carrier_data = {'id': f'temp-{clean_dot}', **mapped, 'created_at': now}

    if carrier_data is None:
        return {
            'success': False,
            'error': 'Carrier not found',
            'message': f'No carrier found with DOT number {clean_dot} in FMCSA database',
            'searched_sources': ['database', 'fmcsa'],
            'dot_number': clean_dot,
        }

    updated_at = carrier_data.get('updated_at')
    return {
        'success': True,
        'data': carrier_data,
        'source': 'database' if from_database else 'fmcsa',
        'cached': bool(response and response.get('cached')),
        'freshness': {
            'last_updated': updated_at,
            'source': carrier_data.get('data_source'),
            'is_fresh': not from_database or _hours_since(updated_at, now) < 24,
        },
    }


async def lookup_batch(db, dot_numbers, force_refresh=False, service=None):
    if not dot_numbers:
        return {'success': False, 'error': 'dot_numbers must be a non-empty list'}
    if len(dot_numbers) > MAX_BATCH_LOOKUP:
        return {'success': False, 'error': f'Maximum {MAX_BATCH_LOOKUP} DOT numbers per batch request'}

    service = service or FMCSAService()
    results = []
    async with create_session() as session:
        for dot_number in dot_numbers:
            try:
                result = await lookup_with_database(db, dot_number, force_refresh, service, session)
            except Exception as e:
                result = {'success': False, 'error': 'Lookup failed', 'message': str(e)}
            results.append({'dot_number': str(dot_number), **result})
            await asyncio.sleep(SYNC_DELAY)
    successful = sum(1 for r in results if r['success'])
    return {
        'success': True,
        'results': results,
        'total': len(dot_numbers),
        'successful': successful,
        'failed': len(results) - successful,
    }

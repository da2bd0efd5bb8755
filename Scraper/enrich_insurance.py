import asyncio
from datetime import datetime

import pandas as pd
from bs4 import BeautifulSoup
from playwright.async_api import async_playwright
from sqlalchemy.exc import SQLAlchemyError

from tracker_config import (
    LI_CARRIER_URL, TWO_CAPTCHA_API_KEY, ENRICH_BATCH_SIZE, ENRICH_MAX_WORKERS, BROWSER_TIMEOUT_MS,
)
from safer_fetch import launch_browser, new_stealth_page, solve_recaptcha_2captcha, save_debug_html
from safer_parser import parse_amount
from carrier_store import get_carrier, upsert_carrier

MAX_ATTEMPTS = 3
KEY_FIELDS = ['Insurance Carrier', 'Policy/Surety', 'insurance_types', 'authority_types']


def _headers(table):
    return [th.get_text(strip=True).lower() for th in table.find_all('th')]


def _rows(table, width):
    for row in table.find_all('tr')[1:]:
        cells = row.find_all(['th', 'td'])
        if len(cells) == width:
            yield [c.get_text(strip=True) for c in cells]


# --- L&I page parsing ---
def extract_active_insurance_details(html, today=None):
    soup = BeautifulSoup(html, "html.parser")
    result = {}

    for table in soup.find_all('table'):
        headers = _headers(table)
        if 'insurance type' in headers and 'insurance required' in headers and 'insurance on file' in headers:
            types = [{'type': t, 'required': r, 'on_file': f} for t, r, f in _rows(table, 3)]
            if types:
                result['insurance_types'] = types
            break

    for table in soup.find_all('table'):
        headers = _headers(table)
        if 'authority type' in headers and 'authority status' in headers and 'application pending' in headers:
            authorities = [{'authority_type': t, 'authority_status': s, 'application_pending': p}
                           for t, s, p in _rows(table, 3)]
            if authorities:
                result['authority_types'] = authorities
            break

    for table in soup.find_all('table'):
        headers = _headers(table)
        if not ('form' in headers and 'type' in headers and 'insurance carrier' in headers):
            continue
        for row in table.find_all('tr')[1:]:
            cells = [c.get_text(strip=True) for c in row.find_all(['td', 'th'])]
            # trailing columns are sometimes missing
            if len(cells) < 7:
                continue
            result['Form'] = cells[0]
            result['Type'] = cells[1]
            result['Insurance Carrier'] = cells[2]
            result['Policy/Surety'] = cells[3]
            result['Posted Date'] = cells[4]
            result['Coverage'] = {'From': cells[5], 'To': cells[6]}
            result['Effective Date'] = cells[7] if len(cells) > 7 else ''
            result['Cancellation Date'] = cells[8] if len(cells) > 8 and cells[8] else None
            result['insurance_status'] = 'Lapsed' if result['Cancellation Date'] else 'Active'

            today = today or datetime.now()
            effective = pd.to_datetime(result['Effective Date'], errors='coerce')
            if pd.notnull(effective) and (today - effective.to_pydatetime()).days > 365:
                result['flag_renewal'] = True
            break
    return result


def _on_file(value):
    amount = parse_amount(value)
    return bool(amount)


def insurance_fields_from_details(details):
    """Carrier columns from extract_active_insurance_details output."""
    fields = {}
    if details.get('Insurance Carrier'):
        fields['insurance_carrier'] = details['Insurance Carrier']
    if details.get('Policy/Surety'):
        fields['insurance_policy_number'] = details['Policy/Surety']
    if details.get('Effective Date'):
        fields['insurance_effective_date'] = details['Effective Date']
    if details.get('Cancellation Date'):
        fields['insurance_expiry_date'] = details['Cancellation Date']
    coverage = details.get('Coverage') or {}
    amount = parse_amount(coverage.get('To'))
    if amount:
        fields['insurance_amount'] = amount
    if details.get('insurance_status'):
        fields['insurance_status'] = 'Active' if details['insurance_status'] == 'Active' else 'Inactive'

    types = details.get('insurance_types') or []
    required = [t for t in types if _on_file(t['required']) or t['required'].lower() == 'yes']
    if required:
        missing = [t['type'] for t in required if not _on_file(t['on_file'])]
        fields['financial_responsibility_status'] = f"Insufficient ({', '.join(missing)})" if missing else 'On File'
        if missing and 'insurance_status' not in fields:
            fields['insurance_status'] = 'Inactive'
    for t in types:
        if t['type'].upper() == 'CARGO' and _on_file(t['on_file']):
            fields['cargo_insurance_amount'] = parse_amount(t['on_file'])

    authorities = details.get('authority_types') or []
    if authorities:
        active = any(a['authority_status'].upper() == 'ACTIVE' for a in authorities)
        fields['authority_status'] = 'Active' if active else 'Inactive'
    return fields


# --- Browser flow ---
async def _submit_search(page, dot_number, api_key):
    digits = ''.join(filter(str.isdigit, str(dot_number)))
    try:
        await page.wait_for_selector('input[name="n_dotno"]', timeout=5000)
        await page.fill('input[name="n_dotno"]', digits)
    except Exception:
        print(f"[ENRICH] No USDOT input found for {dot_number}, assuming already on results page.")
        return

    if await page.query_selector('iframe[src*="recaptcha"]'):
        print(f"[ENRICH] CAPTCHA detected for {dot_number}, solving...")
        if not api_key:
            print("[ENRICH][WARN] TWO_CAPTCHA_API_KEY not set, submitting without a token")
        elif not await solve_recaptcha_2captcha(page, api_key):
            print(f"[ENRICH] CAPTCHA failed for {dot_number}")

    submit_btn = await page.query_selector('input[type="submit"]')
    if submit_btn:
        await submit_btn.click()
        await page.wait_for_load_state('networkidle', timeout=60000)
    else:
        print(f"[ENRICH] Submit button not found for {dot_number}")


async def _submit_form(page, selector, label, dot_number, settle=6):
    form = await page.query_selector(selector)
    if not form:
        print(f"[ENRICH] No {label} form for {dot_number}, scraping current page.")
        return False
    print(f"[ENRICH] Found {label} form for {dot_number}, submitting...")
    await form.evaluate('form => form.submit()')
    await page.wait_for_load_state('networkidle', timeout=30000)
    await asyncio.sleep(settle)
    return True


async def enrich_insurance_for_dot_async(dot_number, api_key=TWO_CAPTCHA_API_KEY, insurance_link=None):
    """Walks the L&I search, detail and Active/Pending Insurance pages; returns parsed details or {}."""
    url = insurance_link or f"{LI_CARRIER_URL}?n_dotno={dot_number}"
    print(f"[ENRICH][DEBUG] DOT: {dot_number}, insurance_url: {url}")
    async with async_playwright() as p:
        try:
            browser = await launch_browser(p)
        except Exception as e:
            print(f"[ENRICH][ERROR] Failed to launch browser for {dot_number}: {e}")
            return {}
        try:
            page = await new_stealth_page(browser)
            await page.goto(url, timeout=BROWSER_TIMEOUT_MS)
            await page.wait_for_load_state('networkidle', timeout=BROWSER_TIMEOUT_MS)
            await _submit_search(page, dot_number, api_key)
            await asyncio.sleep(2)
            await _submit_form(page, 'form[action*="pkg_carrquery.prc_getdetail"]', 'detail', dot_number)
            await _submit_form(page, 'form[action*="prc_activeinsurance"]', 'Active/Pending Insurance', dot_number)

            insurance_html = await page.content()
            print(f"[ENRICH][DEBUG] HTML content length for {dot_number}: {len(insurance_html)}")
            save_debug_html(f"insurance_{dot_number}", insurance_html)
            details = extract_active_insurance_details(insurance_html)
            print(f"[ENRICH][DEBUG] Extracted insurance data for {dot_number}: {details}")
            return details
        except Exception as e:
            print(f"[ENRICH] Failed for {dot_number}: {e}")
            return {}
        finally:
            await browser.close()


# --- Batch enrichment ---
async def enrich_carriers_async(dot_numbers, db, api_key=TWO_CAPTCHA_API_KEY, enrich=None):
    """
    Enriches carriers in batches of ENRICH_BATCH_SIZE with up to ENRICH_MAX_WORKERS browsers at once.
    Returns {successful, failed, errors}.
    """
    enrich = enrich or enrich_insurance_for_dot_async
    results = {'successful': 0, 'failed': 0, 'errors': []}
    batches = [dot_numbers[i:i + ENRICH_BATCH_SIZE] for i in range(0, len(dot_numbers), ENRICH_BATCH_SIZE)]
    print(f"[ENRICH] Total carriers needing enrichment: {len(dot_numbers)}")

    for batch_num, batch in enumerate(batches, 1):
        print(f"[ENRICH] Processing batch {batch_num}/{len(batches)} with {len(batch)} carriers...")
        sem = asyncio.Semaphore(ENRICH_MAX_WORKERS)

        async def enrich_one(dot_number):
            async with sem:
                carrier = get_carrier(db, dot_number)
                if carrier is None:
                    print(f"[ENRICH] Skipping DOT {dot_number}: not in database")
                    return dot_number, None
                link = carrier.insurance_link
                for attempt in range(1, MAX_ATTEMPTS + 1):
                    print(f"[ENRICH][DEBUG] Enriching DOT: {dot_number} (Attempt {attempt}/{MAX_ATTEMPTS})")
                    details = await enrich(dot_number, api_key=api_key, insurance_link=link)
                    if any(details.get(k) for k in KEY_FIELDS):
                        return dot_number, details
                    print(f"[ENRICH][DEBUG] DOT: {dot_number} enrichment attempt {attempt} failed, retrying...")
                    if attempt < MAX_ATTEMPTS:
                        await asyncio.sleep(3)
                print(f"[ENRICH][ERROR] DOT: {dot_number} enrichment failed after {MAX_ATTEMPTS} attempts.")
                return dot_number, None

        outcomes = await asyncio.gather(*(enrich_one(dot) for dot in batch))
        for dot_number, details in outcomes:
            if not details:
                results['failed'] += 1
                results['errors'].append(f"{dot_number}: no insurance data found")
                continue
            now = datetime.now()
            fields = insurance_fields_from_details(details)
            carrier = get_carrier(db, dot_number)
            # insurance enrichment does not change where the carrier record came from
            source = carrier.data_source or 'manual'
            try:
                upsert_carrier(db, {'dot_number': dot_number, **fields}, source, now=now,
                               extra={'insurance_last_verified': now})
                results['successful'] += 1
            except SQLAlchemyError as e:
                db.rollback()
                results['failed'] += 1
                results['errors'].append(f"{dot_number}: {e}")
                print(f"[DB][ERROR] Failed to save insurance for {dot_number}: {e}")
        print(f"[ENRICH] Batch {batch_num} saved.")

    print(f"[ENRICH] Insurance enrichment complete: {results['successful']} updated, {results['failed']} failed")
    return results

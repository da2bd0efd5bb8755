import re
import html as html_lib
from datetime import datetime

import pandas as pd
from bs4 import BeautifulSoup

from tracker_config import LI_BASE_URL

# Text that shows up in SAFER's search/layout chrome rather than carrier data
INVALID_NAME_MARKERS = [
    'Query Result', 'SAFER Table Layout', 'Information', 'USDOT Number',
    'MC/MX Number', 'Enter Value', 'Search Criteria',
]
NAME_BOILERPLATE = [
    'SAFER', 'USDOT', 'MC/MX', 'Query Result', 'Information', 'Table Layout',
    'Enter Value', 'DOT Number', 'Number', 'Name', 'Search Criteria', 'Company Snapshot',
]
LAYOUT_ARTIFACTS = ['SAFER Layout', 'Query Result']

RATING_CODES = {'s': 'satisfactory', 'c': 'conditional', 'u': 'unsatisfactory'}


# --- Text helpers ---
def clean_text(text):
    if text is None:
        return None
    text = html_lib.unescape(str(text)).replace('\xa0', ' ').replace('&nbsp;', ' ')
    text = re.sub(r'\s+', ' ', text).strip()
    return text or None


def parse_int(text):
    """Integer from a SAFER count cell ("1,234"), None unless positive."""
    text = clean_text(text)
    if not text:
        return None
    m = re.search(r'\d[\d,]*', text)
    if not m:
        return None
    try:
        value = int(m.group(0).replace(',', ''))
    except ValueError:
        return None
    return value if value > 0 else None


def parse_amount(text):
    text = clean_text(text)
    if not text:
        return None
    m = re.search(r'\$?([\d,]+)', text)
    if not m or not m.group(1).replace(',', ''):
        return None
    return int(m.group(1).replace(',', ''))


def first_number(text):
    text = clean_text(text)
    if not text:
        return None
    m = re.search(r'(\d+)', text)
    return int(m.group(1)) if m else None


# --- Label lookups ---
def _label_cells(soup, label, names=('th',)):
    for cell in soup.find_all(list(names)):
        # layout cells wrap whole tables; only leaf cells hold labels
        if cell.find('table') is not None:
            continue
        text = cell.get_text(' ', strip=True)
        if text and label in text:
            yield cell


def _next_td_text(cell):
    sibling = cell.find_next_sibling()
    if sibling is not None and sibling.name == 'td':
        return clean_text(sibling.get_text(' ', strip=True))
    return None


def extract_table_value(soup, label):
    # SAFER lays out fields as <th>Label:</th><td>Value</td>
    for candidate in (f'{label}:', label):
        for th in _label_cells(soup, candidate):
            value = _next_td_text(th)
            if value:
                return value
    for td in _label_cells(soup, f'{label}:', names=('td',)):
        value = _next_td_text(td)
        if value:
            return value
    return None


def first_table_value(soup, *labels):
    for label in labels:
        value = extract_table_value(soup, label)
        if value:
            return value
    return None


def extract_address_lines(soup, label):
    for th in _label_cells(soup, label):
        sibling = th.find_next_sibling()
        if sibling is not None and sibling.name == 'td':
            lines = [clean_text(line) for line in sibling.get_text('\n').split('\n')]
            lines = [line for line in lines if line]
            if lines:
                return lines
    return []


def extract_checkbox_field(soup, label):
    """Items ticked with an "X" in the checkbox grid that follows a label."""
    label_cell = next(_label_cells(soup, label, names=('th', 'td')), None)
    if label_cell is None:
        return []
    table = label_cell.find_next('table')
    if table is None:
        return []
    items = []
    for td in table.find_all('td'):
        if td.get_text(strip=True).upper() != 'X':
            continue
        nxt = td.find_next_sibling('td')
        if nxt is None:
            continue
        item = clean_text(nxt.get_text(' ', strip=True))
        if item and len(item) < 50 and not any(a in item for a in LAYOUT_ARTIFACTS):
            items.append(item)
    return items


# --- Page classification ---
def classify_snapshot_page(html):
    """Returns an error message when the page holds no usable carrier data."""
    if 'Company Snapshot' not in html:
        return 'Not a valid company snapshot page'
    has_fields = any(re.search(pat, html, re.I) for pat in (
        r'legal\s*name', r'dba\s*name', r'physical\s*address', r'entity\s*type'))
    if has_fields:
        return None
    if 'RECORD INACTIVE' in html or 'RECORD NOT FOUND' in html:
        return 'Carrier record inactive or not found'
    if 'Search Criteria' in html and 'Users can search by DOT Number' in html:
        return 'No company data found - DOT number may not exist'
    return 'No company data fields found'


# --- Normalizers ---
def normalize_safety_rating(raw):
    if not raw:
        return 'not-rated'
    rating = raw.lower().strip()
    if rating in RATING_CODES:
        return RATING_CODES[rating]
    # "unsatisfactory" contains "satisfactory"
    if 'unsatisfactory' in rating:
        return 'unsatisfactory'
    if 'satisfactory' in rating:
        return 'satisfactory'
    if 'conditional' in rating:
        return 'conditional'
    return 'not-rated'


def normalize_authority_status(raw):
    status = (raw or '').lower()
    if 'not authorized' in status:
        return 'Inactive'
    if 'authorized' in status or 'active' in status:
        return 'Active'
    return 'Unknown'


def normalize_status(raw):
    if raw is None or raw == '':
        return 'Unknown'
    if isinstance(raw, bool):
        return 'Active' if raw else 'Inactive'
    status = str(raw).lower().strip()
    # FMCSA API flags such as allowedToOperate are single letters
    if status in ('y', 'n'):
        return 'Active' if status == 'y' else 'Inactive'
    if (any(word in status for word in ('inactive', 'revoked', 'suspended', 'not authorized'))
            or re.search(r'\bno\b', status)):
        return 'Inactive'
    if 'active' in status or 'authorized' in status or re.search(r'\byes\b', status):
        return 'Active'
    return 'Unknown'


def normalize_mc_number(text):
    text = clean_text(text)
    if not text:
        return None
    m = re.search(r'MC-(\d+)', text)
    if m:
        return f'MC-{m.group(1)}'
    if re.fullmatch(r'\d+', text):
        return f'MC-{text}'
    return None


def parse_city_state(line):
    if not line:
        return None, None
    m = re.search(r'([A-Za-z][A-Za-z .\'-]*?),\s*([A-Z]{2})\b', line)
    if not m:
        return None, None
    return m.group(1).strip(), m.group(2)


# --- Legal name ---
def is_valid_legal_name(name):
    if not name or len(name) > 200:
        return False
    return not any(marker in name for marker in INVALID_NAME_MARKERS)


def extract_legal_name(soup, dot_number):
    name = extract_table_value(soup, 'Legal Name')
    if name and not is_valid_legal_name(name):
        print(f"[SAFER][DEBUG] DOT {dot_number} - invalid legal name cleared: {name[:80]}")
        name = None
    if not name and soup.title:
        m = re.search(r'SAFER Web - Company Snapshot\s+(.+)', soup.title.get_text(), re.I)
        if m:
            name = m.group(1).strip()
    if not name or len(name) > 200:
        body = soup.body.get_text(' ') if soup.body else soup.get_text(' ')
        for match in re.findall(r"[A-Z][A-Z\s&.,'-]{3,50}", body):
            candidate = match.strip()
            if 3 < len(candidate) < 100 and not any(b in candidate for b in NAME_BOILERPLATE):
                name = candidate
                break
    if not is_valid_legal_name(name):
        name = f'Carrier {dot_number}'
    return clean_text(name)


# --- Tables ---
def _find_table_with_header(soup, header_text, also=None):
    candidates = []
    for table in soup.find_all('table'):
        headers = [th.get_text(' ', strip=True) for th in table.find_all('th')]
        headers.append(table.get('summary', ''))
        if any(header_text in h for h in headers) and (also is None or any(also in h for h in headers)):
            candidates.append(table)
    # SAFER nests its data tables inside layout tables; prefer the innermost
    for table in candidates:
        if table.find('table') is None:
            return table
    return candidates[0] if candidates else None


def _row_values(table, row_label):
    for row in table.find_all('tr'):
        th = row.find('th', recursive=False)
        if th and th.get_text(' ', strip=True).rstrip(':') == row_label:
            return [td.get_text(strip=True) for td in row.find_all('td', recursive=False)]
    return []


def parse_inspection_summary(soup):
    result = {}
    table = _find_table_with_header(soup, 'Inspection Type')
    if table is None:
        return result
    inspections = _row_values(table, 'Inspections')
    oos = _row_values(table, 'Out of Service')
    if len(inspections) >= 3:
        vehicle, driver, hazmat = (first_number(v) or 0 for v in inspections[:3])
        result['vehicle_inspections'] = vehicle
        result['driver_inspections'] = driver
        result['inspection_count'] = vehicle + driver + hazmat
    if len(oos) >= 3:
        result['out_of_service_orders'] = sum(first_number(v) or 0 for v in oos[:3])
    pct = _row_values(table, 'Out of Service %')
    if len(pct) >= 3:
        result['oos_percent_vehicle'] = pct[0]
        result['oos_percent_driver'] = pct[1]
        result['oos_percent_hazmat'] = pct[2]
    return result


def parse_crash_summary(soup):
    result = {}
    table = _find_table_with_header(soup, 'Type', also='Fatal')
    if table is None:
        return result
    crashes = _row_values(table, 'Crashes')
    if len(crashes) >= 4:
        result['fatal_crashes'] = first_number(crashes[0]) or 0
        result['injury_crashes'] = first_number(crashes[1]) or 0
        result['tow_away_crashes'] = first_number(crashes[2]) or 0
        result['crash_count'] = first_number(crashes[3]) or 0
    return result


def extract_review_rating(soup):
    table = _find_table_with_header(soup, 'Review Information')
    rating = {}
    if table is None:
        return rating
    for tr in table.find_all('tr'):
        ths = tr.find_all('th', recursive=False)
        tds = tr.find_all('td', recursive=False)
        for th, td in zip(ths, tds):
            label = th.get_text(strip=True)
            value = clean_text(td.get_text(' ', strip=True))
            if label.startswith('Rating Date'):
                rating['rating_date'] = value
            elif label.startswith('Rating'):
                rating['rating'] = value
            elif label.startswith('Review Date'):
                rating['review_date'] = value
    return rating


def _absolute_li_url(href):
    if href.startswith('http'):
        return href
    if href.startswith('/'):
        return LI_BASE_URL + href
    return LI_BASE_URL + '/LIVIEW/' + href


def extract_insurance_link(soup):
    for a in soup.find_all('a', href=True):
        href = a['href']
        if 'pkg_carrquery.prc_carrlist' in href and 'n_dotno=' in href:
            return _absolute_li_url(href)
    for a in soup.find_all('a', href=True):
        parent = a.find_parent()
        if parent and 'For Licensing and Insurance details' in parent.get_text():
            return _absolute_li_url(a['href'])
    return ''


# --- Derived fields ---
def derive_equipment_types(classification, cargo):
    text = ' '.join(classification + cargo).lower()
    equipment = []
    if 'general freight' in text:
        equipment.append('dry van')
    if 'flatbed' in text:
        equipment.append('flatbed')
    if 'refrigerated' in text:
        equipment.append('refrigerated')
    if 'tanker' in text:
        equipment.append('tanker')
    for item in cargo:
        if item not in equipment:
            equipment.append(item)
    return equipment


def years_since(date_str, today=None):
    try:
        date = pd.to_datetime(date_str, errors='coerce')
    except Exception:
        return None
    if pd.isnull(date):
        return None
    today = today or datetime.now()
    years = today.year - date.year
    if 0 < years < 100:
        return years
    return None


def _flag(text, *words):
    text = (text or '').lower()
    return any(w in text for w in words)


# --- Main snapshot parser ---
def parse_carrier_html(html, dot_number, today=None):
    soup = BeautifulSoup(html, 'html.parser')
    data = {'dot_number': str(dot_number)}

    # --- Identity ---
    data['legal_name'] = extract_legal_name(soup, dot_number)
    data['dba_name'] = extract_table_value(soup, 'DBA Name')
    address_lines = extract_address_lines(soup, 'Physical Address')
    if address_lines:
        data['physical_address'] = ' '.join(address_lines)
        data['city'], data['state'] = parse_city_state(address_lines[-1])
    else:
        data['physical_address'] = extract_table_value(soup, 'Physical Address')
    data['phone'] = extract_table_value(soup, 'Phone')
    data['entity_type'] = extract_table_value(soup, 'Entity Type')
    data['usdot_status'] = extract_table_value(soup, 'USDOT Status')
    data['operating_status'] = first_table_value(soup, 'Operating Status', 'Authority Status')
    data['mc_number'] = normalize_mc_number(
        first_table_value(soup, 'MC/MX/FF Number(s)', 'MC/MX Number(s)', 'MC Number', 'MC'))

    # --- Ratings and status ---
    review = extract_review_rating(soup)
    raw_rating = first_table_value(soup, 'Safety Rating', 'DOT Safety Rating') or review.get('rating')
    if raw_rating:
        data['safety_rating'] = normalize_safety_rating(raw_rating)
    data['safety_review_date'] = extract_table_value(soup, 'Safety Review Date') or review.get('review_date')
    data['safety_rating_date'] = extract_table_value(soup, 'Safety Rating Date') or review.get('rating_date')

    raw_authority = first_table_value(soup, 'Operating Authority Status', 'Operating Status', 'Authority Status')
    if raw_authority:
        data['authority_status'] = normalize_authority_status(raw_authority)

    oos_date = extract_table_value(soup, 'Out of Service Date')
    if oos_date and oos_date.lower() != 'none':
        data['out_of_service_date'] = oos_date
    data['mcs_150_date'] = first_table_value(soup, 'MCS-150 Form Date', 'MCS-150 Date')

    if data.get('authority_status') == 'Active' and not data.get('out_of_service_date'):
        data['insurance_status'] = 'Active'
    else:
        data['insurance_status'] = 'Unknown'

    # --- Classification ---
    classification = extract_checkbox_field(soup, 'Operation Classification')
    if not classification:
        value = extract_table_value(soup, 'Operation Classification')
        classification = [value] if value else []
    data['operation_classification'] = classification or ['Unknown']

    operations = extract_checkbox_field(soup, 'Carrier Operation')
    if not operations:
        value = extract_table_value(soup, 'Carrier Operation')
        operations = [value] if value else []
    data['carrier_operation'] = operations or ['Unknown']

    cargo = extract_checkbox_field(soup, 'Cargo Carried')
    if cargo:
        data['cargo_carried'] = cargo

    # --- Fleet ---
    data['vehicle_count'] = parse_int(extract_table_value(soup, 'Power Units'))
    data['driver_count'] = parse_int(extract_table_value(soup, 'Drivers'))
    data['total_mileage'] = parse_int(first_table_value(soup, 'MCS-150 Mileage', 'Miles', 'Total Miles'))

    # --- Flags ---
    interstate = extract_table_value(soup, 'Interstate')
    if interstate:
        data['interstate_operation'] = _flag(interstate, 'yes', 'interstate')
    elif operations:
        data['interstate_operation'] = any(op.lower() == 'interstate' for op in operations)
    hazmat = first_table_value(soup, 'Hazmat', 'Hazardous Materials')
    if hazmat:
        data['hazmat_flag'] = _flag(hazmat, 'yes', 'hazmat')
    elif operations or cargo:
        data['hazmat_flag'] = any('(HM)' in op for op in operations) or any('Hazardous' in c for c in cargo)
    private = first_table_value(soup, 'Private', 'For Hire')
    if private:
        data['pc_flag'] = _flag(private, 'private')
    elif classification:
        data['pc_flag'] = any(c.lower().startswith('priv') for c in classification)

    # --- Safety history ---
    data.update(parse_inspection_summary(soup))
    data.update(parse_crash_summary(soup))
    if 'crash_count' not in data:
        data['crash_count'] = first_number(first_table_value(soup, 'Crash Data'))
    if 'inspection_count' not in data:
        data['inspection_count'] = first_number(first_table_value(soup, 'Inspection Data'))
    if 'out_of_service_orders' not in data:
        data['out_of_service_orders'] = first_number(first_table_value(soup, 'OOS Orders'))
    if data.get('inspection_count') and data.get('out_of_service_orders'):
        data['out_of_service_rate'] = round(data['out_of_service_orders'] / data['inspection_count'] * 100)

    # --- Insurance ---
    data['insurance_carrier'] = first_table_value(soup, 'Insurance Carrier', 'Insurance Company')
    data['insurance_policy_number'] = first_table_value(soup, 'Policy Number', 'Insurance Policy')
    data['insurance_amount'] = parse_amount(first_table_value(soup, 'Insurance Amount', 'Liability Insurance'))
    data['cargo_insurance_amount'] = parse_amount(first_table_value(soup, 'Cargo Insurance', 'Cargo Coverage'))
    data['insurance_effective_date'] = extract_table_value(soup, 'Insurance Effective Date')
    data['insurance_expiry_date'] = first_table_value(soup, 'Insurance Expiry Date', 'Insurance Expiration')
    data['financial_responsibility_status'] = first_table_value(soup, 'Financial Responsibility', 'Financial Status')
    data['insurance_link'] = extract_insurance_link(soup)

    # --- Derived ---
    equipment = derive_equipment_types(classification, cargo)
    if equipment:
        data['equipment_types'] = equipment
    areas = []
    if data.get('interstate_operation'):
        areas.append('Interstate')
    if data.get('state'):
        areas.append(data['state'])
    if areas:
        data['service_areas'] = areas
    if data.get('mcs_150_date'):
        data['years_in_business'] = years_since(data['mcs_150_date'], today)

    return {k: v for k, v in data.items() if v is not None and v != ''}

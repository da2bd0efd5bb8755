import re
import asyncio
import concurrent.futures
from pathlib import Path

import aiohttp
from playwright.async_api import async_playwright
from playwright_stealth import Stealth
from twocaptcha import TwoCaptcha

from tracker_config import (
    SAFER_BASE_URL, SAFER_QUERY_URL, SAFER_SNAPSHOT_URL, USER_AGENT,
    REQUEST_TIMEOUT, BROWSER_TIMEOUT_MS, DEBUG_HTML_DIR,
)

# Headless Chromium inside containers and CI runners
BROWSER_ARGS = [
    '--no-sandbox',
    '--disable-dev-shm-usage',
    '--disable-gpu',
    '--disable-extensions',
    '--disable-background-networking',
    '--disable-sync',
    '--no-first-run',
]
RECAPTCHA_TOKEN_FIELDS = ('g-recaptcha-response', 'g_recaptcha_response')

HTML_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"


class FetchError(Exception):
    def __init__(self, message, http_status=None, rate_limited=False):
        super().__init__(message)
        self.http_status = http_status
        self.rate_limited = rate_limited


def snapshot_query(dot_number):
    return {
        "searchtype": "ANY",
        "query_type": "queryCarrierSnapshot",
        "query_param": "USDOT",
        "query_string": str(dot_number),
    }


# --- Plain HTTP (aiohttp) ---
def create_session():
    timeout = aiohttp.ClientTimeout(total=REQUEST_TIMEOUT)
    return aiohttp.ClientSession(timeout=timeout, headers={"User-Agent": USER_AGENT})


async def post_carrier_snapshot(session, dot_number):
    headers = {
        "Content-Type": "application/x-www-form-urlencoded",
        "Origin": SAFER_BASE_URL,
        "Referer": SAFER_BASE_URL + "/",
        "Accept": HTML_ACCEPT,
    }
    async with session.post(SAFER_QUERY_URL, data=snapshot_query(dot_number), headers=headers,
                            allow_redirects=True) as resp:
        html = await resp.text(errors="ignore")
        if resp.status != 200:
            raise FetchError(f"HTTP {resp.status}", http_status=resp.status, rate_limited=resp.status == 429)
        print(f"[SAFER][DEBUG] DOT {dot_number} POST ok len={len(html)}")
        return html


async def get_query_snapshot(session, dot_number):
    headers = {"Accept": HTML_ACCEPT, "Accept-Language": "en-US,en;q=0.5", "Upgrade-Insecure-Requests": "1"}
    async with session.get(SAFER_QUERY_URL, params=snapshot_query(dot_number), headers=headers) as resp:
        if resp.status != 200:
            raise FetchError(f"FMCSA API returned {resp.status}: {resp.reason}", http_status=resp.status,
                             rate_limited=resp.status == 429)
        return await resp.text(errors="ignore")


async def get_company_snapshot(session, dot_number):
    params = {"ID": str(dot_number), "TYPE": "USDOT"}
    async with session.get(SAFER_SNAPSHOT_URL, params=params) as resp:
        if resp.status != 200:
            raise FetchError(f"Company snapshot request failed: {resp.status}", http_status=resp.status,
                             rate_limited=resp.status == 429)
        return await resp.text(errors="ignore")


async def fetch_json(session, url, headers=None, params=None, label="API"):
    async with session.get(url, headers=headers, params=params) as resp:
        if resp.status != 200:
            raise FetchError(f"{label} HTTP {resp.status}", http_status=resp.status,
                             rate_limited=resp.status == 429)
        return await resp.json(content_type=None)


# --- Browser (Playwright) ---
async def launch_browser(playwright, headless=True):
    return await playwright.chromium.launch(headless=headless, args=BROWSER_ARGS)


async def new_stealth_page(browser):
    page = await browser.new_page()
    await Stealth().apply_stealth_async(page)
    await page.set_extra_http_headers({"User-Agent": USER_AGENT})
    return page


async def render_company_snapshot(dot_number):
    """Loads the Company Snapshot in a real browser for pages that need scripting."""
    url = f"{SAFER_SNAPSHOT_URL}?ID={dot_number}&TYPE=USDOT"
    async with async_playwright() as p:
        browser = await launch_browser(p)
        try:
            page = await new_stealth_page(browser)
            print(f"[SAFER][BROWSER] Navigating to {url}")
            await page.goto(url, timeout=BROWSER_TIMEOUT_MS)
            await page.wait_for_load_state('networkidle', timeout=BROWSER_TIMEOUT_MS)
            html = await page.content()
            print(f"[SAFER][BROWSER] DOT {dot_number} rendered len={len(html)}")
            return html
        finally:
            await browser.close()


def recaptcha_sitekey(iframe_src):
    match = re.search(r'[?&]k=([\w-]+)', iframe_src or '')
    return match.group(1) if match else None


async def solve_recaptcha_2captcha(page, api_key):
    """
    Solves the reCAPTCHA on the current L&I page through 2captcha and writes the
    token into the form. Returns the token, or None when there is nothing to solve
    or the solver fails.
    """
    if not api_key:
        print("[2Captcha] TWO_CAPTCHA_API_KEY not set, cannot solve reCAPTCHA")
        return None
    iframe = await page.query_selector('iframe[src*="recaptcha"]')
    sitekey = recaptcha_sitekey(await iframe.get_attribute('src')) if iframe else None
    if not sitekey:
        print(f"[2Captcha] No reCAPTCHA sitekey on {page.url}")
        return None

    page_url = page.url
    print(f"[2Captcha] Requesting token for {sitekey} ({page_url})")
    solver = TwoCaptcha(api_key)
    # The 2captcha client blocks while polling, keep it off the event loop
    try:
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            solved = await asyncio.get_running_loop().run_in_executor(
                pool, lambda: solver.recaptcha(sitekey=sitekey, url=page_url))
    except Exception as e:
        print(f"[2Captcha] Solver failed: {e}")
        return None

    token = solved['code']
    await page.evaluate('''([token, fields]) => {
        for (const name of fields) {
            const byId = document.getElementById(name);
            if (byId) { byId.style.display = ''; byId.value = token; }
            for (const el of document.getElementsByName(name)) el.value = token;
        }
    }''', [token, list(RECAPTCHA_TOKEN_FIELDS)])
    await page.wait_for_timeout(2000)
    print(f"[2Captcha] Token injected ({len(token)} chars)")
    return token


# --- Debug dumps ---
def save_debug_html(name, html):
    if not DEBUG_HTML_DIR:
        return None
    path = Path(DEBUG_HTML_DIR)
    path.mkdir(parents=True, exist_ok=True)
    safe_name = re.sub(r'[^\w.-]', '_', name)
    target = path / f"{safe_name}.html"
    target.write_text(html, encoding='utf-8')
    print(f"[SAFER][DEBUG] Saved HTML to {target}")
    return target

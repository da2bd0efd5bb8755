import os

# --- SAFER endpoints ---
SAFER_BASE_URL = "https://safer.fmcsa.dot.gov"
SAFER_QUERY_URL = f"{SAFER_BASE_URL}/query.asp"
SAFER_SNAPSHOT_URL = f"{SAFER_BASE_URL}/CompanySnapshot.aspx"
LI_BASE_URL = "https://li-public.fmcsa.dot.gov"
LI_CARRIER_URL = f"{LI_BASE_URL}/LIVIEW/pkg_carrquery.prc_carrlist"

# --- Third-party / official APIs ---
SAFER_WEB_API_URL = "https://api.saferwebapi.com/v1/carrier/{dot}"
FMCSA_API_URL = "https://mobile.fmcsa.dot.gov/qc/services/carriers/{dot}"
SAFER_WEB_API_KEY = os.getenv("SAFER_WEB_API_KEY", "")
FMCSA_WEB_KEY = os.getenv("FMCSA_WEB_KEY", "")
TWO_CAPTCHA_API_KEY = os.getenv("TWO_CAPTCHA_API_KEY", "")

# --- Request behaviour ---
REQUEST_DELAY = float(os.getenv("SAFER_REQUEST_DELAY", "2.0"))  # seconds between SAFER requests
MAX_RETRIES = int(os.getenv("SAFER_MAX_RETRIES", "3"))
REQUEST_TIMEOUT = int(os.getenv("SAFER_REQUEST_TIMEOUT", "30"))
BROWSER_TIMEOUT_MS = 120000
SYNC_DELAY = 0.1
CACHE_TTL_SECONDS = 24 * 60 * 60
USER_AGENT = os.getenv(
    "SAFER_USER_AGENT",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
)

# --- Browser lookups (pages that require scripting) ---
USE_BROWSER_FALLBACK = os.getenv("SAFER_USE_BROWSER", "false").lower() == "true"

# --- Storage ---
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///carriertracker.db")

# --- Insurance enrichment ---
ENRICH_MAX_WORKERS = int(os.getenv("ENRICH_MAX_WORKERS", "3"))
ENRICH_BATCH_SIZE = int(os.getenv("ENRICH_BATCH_SIZE", "10"))

# --- Debug dumps ---
DEBUG_HTML_DIR = os.getenv("SAFER_DEBUG_HTML_DIR", "")

# --- Freshness thresholds (hours) ---
FMCSA_STALE_HOURS = 168
MANUAL_STALE_HOURS = 720

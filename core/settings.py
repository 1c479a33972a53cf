import os

# Quality score weights (sum to 1.0)
NAME_WEIGHT = 0.40
DESCRIPTION_WEIGHT = 0.30
IMAGE_WEIGHT = 0.15
LINK_WEIGHT = 0.15

ENTITY_FIELDS = ("name", "description", "image", "link")

# Field validation bounds
NAME_MIN_LENGTH = 2
NAME_MAX_LENGTH = 200
DESCRIPTION_MIN_LENGTH = 10
DESCRIPTION_MAX_LENGTH = 2000
ALLOWED_URL_SCHEMES = ("http", "https")
MAX_URL_LENGTH = 2048

# Element scoring
MINIMUM_NAME_LENGTH = 2
MINIMUM_DESCRIPTION_LENGTH = 30
MINIMUM_CHILD_TEXT_LENGTH = 10
MINIMUM_THRESHOLD_SCORE = 0.2
DEFAULT_IMAGE_SIZE_SCORE = 0.5
DEFAULT_LINK_SCORE = 0.5
SOCIAL_HOSTS = (
    "facebook.com",
    "instagram.com",
    "twitter.com",
    "x.com",
    "linkedin.com",
    "youtube.com",
    "tiktok.com",
)

# Candidate ranking
PRIOR_SUCCESS_RATE = 0.5
PRIOR_WEIGHT = 2.0
RECENCY_HALF_LIFE_DAYS = 14.0
RECENCY_FLOOR = 0.5
TIER_MULTIPLIERS = {"high": 1.25, "normal": 1.0, "low": 0.75}
MAX_RANKED_CANDIDATES = 10
MAX_CANDIDATES_PER_CONTEXT = 50

# Pruning, promotion and retention
PRUNE_MIN_SAMPLES = 3
PRUNE_MAX_SUCCESS_RATE = 0.2
RECENT_ACTIVITY_DAYS = 7
PROMOTE_MIN_SUCCESS_RATE = 0.8
PROMOTE_MIN_SUCCESSES = 5
DEMOTE_MAX_SUCCESS_RATE = 0.3
DEMOTE_MIN_SAMPLES = 10
RETENTION_DAYS = 90
HIGH_VALUE_SUCCESS_COUNT = 5
FOLDED_ATTEMPT_CACHE_SIZE = 500  # per context
MAX_PENDING_OUTCOMES = 1000

# Discovery cadence
DISCOVERY_REFRESH_HOURS = 24
REDISCOVERY_FAILURE_WINDOW_SECONDS = 60
REDISCOVERY_LOW_SUCCESS_RATE = 0.3

# Retry and backoff
FIELD_RETRY_ATTEMPTS = 2
NAVIGATION_RETRY_ATTEMPTS = 2
RETRYABLE_ERROR_CLASSES = ("timeout", "navigation", "bot_detection")
BLOCK_WINDOW_SECONDS = 30 * 60
BASE_BACKOFF_SECONDS = 2.0
MODERATE_BACKOFF_SECONDS = 5.0
HEAVY_BACKOFF_SECONDS = 15.0
HEAVY_BLOCK_THRESHOLD = 3
RETRY_MULTIPLIER = 1.3
MAX_BACKOFF_SECONDS = 30.0
PROBLEMATIC_DOMAIN_WINDOW_SECONDS = 60 * 60
PROBLEMATIC_DOMAIN_BLOCKS = 3
MAX_BLOCK_EVENTS_PER_DOMAIN = 1000

# Timeouts (seconds)
NAVIGATION_TIMEOUT = 30.0
ATTEMPT_TIMEOUT = 5.0
EVALUATE_TIMEOUT = 5.0
PAGE_READY_TIMEOUT = 15.0
WAIT_POLL_INTERVAL = 0.1

# Bot detection
BLOCK_VOCABULARY = (
    "join now",
    "sign in",
    "sign up",
    "log in",
    "login",
    "create account",
    "please sign in",
    "authentication required",
    "temporarily blocked",
    "temporarily unavailable",
    "try again later",
    "rate limit",
    "unusual traffic",
    "verify you are human",
    "are you a robot",
)
CHALLENGE_MARKERS = (
    ".challenge-page",
    ".security-challenge",
    "[data-test-id*='challenge']",
    "#captcha",
    ".g-recaptcha",
    ".h-captcha",
    "iframe[src*='captcha']",
    "#challenge-form",
    "#cf-challenge-running",
)
LOGIN_WALL_MARKERS = (
    "form[action*='login']",
    "input[type='password']",
)
ENTITY_MARKERS = (
    "h1",
    "meta[property='og:title']",
    "[itemtype*='Organization']",
    "[itemtype*='Product']",
    "[itemtype*='Person']",
    "[itemprop='name']",
)
OVERLAY_SELECTORS = (
    "[role='dialog']",
    "[aria-modal='true']",
    "[class*='cookie']",
    "[class*='consent']",
    "[class*='modal']",
    "[class*='overlay']",
)
OVERLAY_DISMISS_TEXTS = (
    "allow all cookies",
    "accept all",
    "accept",
    "not now",
    "no thanks",
    "dismiss",
    "close",
)
HUMAN_POINTER_MOVES = (2, 4)
HUMAN_SCROLLS = (1, 3)
HUMAN_PAUSE_SECONDS = (0.2, 0.7)

# Honeypot traps
TRAP_CANDIDATE_QUERY = "input, textarea, select, a, button, div, span, form"
TRAP_NAME_PATTERN = r"honeypot|\btrap\b|\bbot\b|do-not-fill|human-check|leave-empty"
TRAP_NAME_ATTRIBUTES = ("name", "id", "class")
TRAP_OFFSCREEN_PIXELS = 2000
MAX_TRAPS_PER_PAGE = 200
MAX_TRAPS_PER_HOST = 500

# Selector discovery
DISCOVERY_TOP_K = 20
DISCOVERY_MAX_TEXT_LENGTH = 50
DISCOVERY_MAX_ATTRIBUTE_LENGTH = 80
DISCOVERY_MIN_CLASS_LENGTH = 3
DISCOVERY_SCORES = {
    "test_id": 25,
    "data_attribute": 10,
    "role": 8,
    "label_attribute": 6,
    "class_combination": 4,
    "class_token": 3,
    "tag_class": 2,
    "tag": 1,
    "text_contains": 0,
}
DISCOVERY_HINT_BONUS = 20
DISCOVERY_FIELD_BONUS = 10
DISCOVERY_FIELD_TAGS = {
    "name": ("h1",),
    "description": ("p", "meta"),
    "image": ("img",),
    "link": ("a",),
}

# Maintenance
MAINTENANCE_INTERVAL_SECONDS = 6 * 60 * 60
MAINTENANCE_INITIAL_DELAY_SECONDS = 30
INSIGHT_MIN_ATTEMPTS = 5
INSIGHT_TOP_PERFORMERS = 10
INSIGHT_WORST_PERFORMERS = 5
INSIGHT_SUCCESS_THRESHOLD = 0.6
INSIGHT_LOW_PERFORMER_RATE = 0.3
INSIGHT_HIGH_PERFORMER_RATE = 0.8
HEALTH_CRITICAL_RATE = 0.4

# Persistence
LEARNING_DB_PATH = os.getenv("ADAPTIVE_SCRAPER_DB", "learning_data.db")
SQLITE_TIMEOUT = 10.0

# URL normalisation
TRACKING_QUERY_PARAMS = ("fbclid", "gclid", "ref", "ref_src", "trk", "trkInfo", "mc_cid", "mc_eid")
TRACKING_QUERY_PREFIXES = ("utm_",)
MOBILE_HOST_PREFIXES = ("m.", "mobile.", "touch.")
PATH_TEMPLATE_DEPTH = 2

# Site path templates: host -> [(regex, template)]
SITE_PATH_TEMPLATES = {
    "linkedin.com": [(r"^/company/[^/]+(?P<rest>/about)?", "/company/*")],
    "facebook.com": [(r"^/[^/]+/about", "/*/about"), (r"^/[^/]+/?$", "/*")],
}

# Seed strategies per field, most specific first
SEED_STRATEGIES = {
    "name": [
        "selector:meta[property='og:title']::attr(content)",
        "selector:h1::text",
        "heuristic:name",
    ],
    "description": [
        "selector:meta[property='og:description']::attr(content)",
        "selector:meta[name='description']::attr(content)",
        "heuristic:description",
    ],
    "image": [
        "selector:meta[property='og:image']::attr(content)",
        "selector:img[alt*='logo' i]::attr(src)",
        "heuristic:image",
    ],
    "link": [
        "selector:a[itemprop='url']::attr(href)",
        "selector:a[rel~='me']::attr(href)",
        r"pattern:(?i)\bwebsite\b\W{0,3}(https?://[^\s<>\"']+)",
        "heuristic:link",
    ],
}

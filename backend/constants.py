"""
Centralized Constants - SINGLE SOURCE OF TRUTH

Quota ceilings, similarity thresholds, key prefixes and backfill ranges
shared by the providers, orchestrators, scheduler and queue handlers.

DO NOT duplicate these definitions in other files.
"""

# =============================================================================
# PROVIDER CAPABILITIES
# =============================================================================

CAPABILITY_ISBN_RESOLUTION = 'isbn-resolution'
CAPABILITY_METADATA = 'metadata-enrichment'
CAPABILITY_COVERS = 'cover-images'
CAPABILITY_AUTHOR_BIOGRAPHY = 'author-biography'
CAPABILITY_SUBJECTS = 'subject-enrichment'
CAPABILITY_BOOK_GENERATION = 'book-generation'

PROVIDER_TYPE_FREE = 'free'
PROVIDER_TYPE_PAID = 'paid'
PROVIDER_TYPE_AI = 'ai'

PROVIDER_TYPES = (PROVIDER_TYPE_FREE, PROVIDER_TYPE_PAID, PROVIDER_TYPE_AI)


# =============================================================================
# QUOTA (paid metadata provider, per UTC day)
# =============================================================================

# Hard ceiling enforced upstream
DAILY_LIMIT = 15000

# Calls held back from routine work
SAFETY_BUFFER = 2000

# Cron-triggered work must leave twice the buffer untouched
CRON_QUOTA_MULTIPLIER = 2

# Upper bound for a single bulk operation
BULK_OPERATION_MAX_CALLS = 100

QUOTA_KEY_PREFIX = 'quota'


# =============================================================================
# TIMEOUTS (seconds)
# =============================================================================

RESOLUTION_PROVIDER_TIMEOUT = 15
GENERATION_PROVIDER_TIMEOUT = 60
AVAILABILITY_CHECK_TIMEOUT = 5
DEFAULT_HTTP_TIMEOUT = 10


# =============================================================================
# SIMILARITY THRESHOLDS
# =============================================================================

# Title similarity above which two candidates are the same book
FUZZY_TITLE_SIMILARITY_THRESHOLD = 0.6

# Minimum title similarity between a query and a resolved record
ISBN_RESOLUTION_SIMILARITY_THRESHOLD = 0.7

# Max fuzzy matches returned per candidate title
FUZZY_MATCH_LIMIT = 3

# Confidence buckets for resolved keys (0-100)
HIGH_CONFIDENCE = 80
MEDIUM_CONFIDENCE = 60


# =============================================================================
# KEY-VALUE STORE
# =============================================================================

# Keys longer than this are replaced by a content hash
MAX_KV_KEY_BYTES = 512

JOB_STATUS_PREFIX = 'backfill:job:'
JOB_STATUS_TTL_SECONDS = 7 * 24 * 60 * 60

NOT_FOUND_CACHE_PREFIX = 'isbn_not_found:'
NOT_FOUND_CACHE_TTL_SECONDS = 24 * 60 * 60


# =============================================================================
# BACKFILL
# =============================================================================

BACKFILL_YEAR_START = 2000
BACKFILL_YEAR_END = 2024

# Lock keys are only defined for this year window
LOCK_YEAR_MIN = 1900
LOCK_YEAR_MAX = 2099

# ISBN batch units live above the period key space
ISBN_BATCH_LOCK_OFFSET = 1_000_000_000

UNIT_STATUS_PENDING = 'pending'
UNIT_STATUS_PROCESSING = 'processing'
UNIT_STATUS_COMPLETED = 'completed'
UNIT_STATUS_FAILED = 'failed'
UNIT_STATUS_RETRY = 'retry'

UNIT_STATUSES = (
    UNIT_STATUS_PENDING,
    UNIT_STATUS_PROCESSING,
    UNIT_STATUS_COMPLETED,
    UNIT_STATUS_FAILED,
    UNIT_STATUS_RETRY,
)

TERMINAL_UNIT_STATUSES = (UNIT_STATUS_COMPLETED, UNIT_STATUS_FAILED)

# Books requested per period unit
UNIT_BATCH_SIZE = 20

# Max keys per enrichment queue message
ENRICHMENT_MESSAGE_MAX_KEYS = 100

PROMPT_VARIANT_BASELINE = 'baseline'
PROMPT_VARIANT_CONTEMPORARY = 'contemporary-notable'

# Years at or after this use the contemporary prompt
CONTEMPORARY_YEAR = 2020


def get_prompt_variant_for_year(year: int) -> str:
    """
    Pick the generation prompt variant for a backfill year.

    Args:
        year: Publication year of the unit

    Returns:
        'contemporary-notable' for recent years, 'baseline' otherwise
    """
    if year >= CONTEMPORARY_YEAR:
        return PROMPT_VARIANT_CONTEMPORARY
    return PROMPT_VARIANT_BASELINE


# =============================================================================
# QUALITY SCORING
# =============================================================================

PROVIDER_QUALITY_WEIGHTS = {
    'user-correction': 50,
    'isbndb': 40,
    'google-books': 30,
    'open-library': 20,
}

DEFAULT_PROVIDER_QUALITY = 10

# Fixed precedence for priority-order fields (first wins)
PROVIDER_PRECEDENCE = [
    'user-correction',
    'asset-store',  # covers harvested into our own blob store
    'isbndb',
    'google-books',
    'open-library',
    'archive-org',
    'wikidata',
    'gemini',
    'xai',
    'synthetic',
]

ASSET_STORE_SOURCE = 'asset-store'

# Quality assigned to records persisted without any key resolution
SYNTHETIC_QUALITY = 5

BOOK_FORMATS = ('Hardcover', 'Paperback', 'eBook', 'Audiobook', 'Unknown')


# =============================================================================
# QUEUES
# =============================================================================

QUEUE_DISCOVERY = 'discovery'
QUEUE_ENRICHMENT = 'enrichment'
QUEUE_ASSETS = 'assets'

PRIORITY_HIGH = 'high'
PRIORITY_NORMAL = 'normal'
PRIORITY_LOW = 'low'

# Keys per batch metadata call to the paid provider
BATCH_METADATA_MAX_KEYS = 100

from __future__ import annotations

# Storage
DEFAULT_DATA_DIR = "./data"
DEFAULT_DB_PATH = "role_reactor.db"
DEFAULT_CACHE_TTL_SECONDS = 300
DEFAULT_SYNC_INTERVAL_SECONDS = 300

COLLECTION_ROLE_MAPPINGS = "role_mappings"
COLLECTION_TEMPORARY_ROLES = "temporary_roles"
COLLECTION_POLLS = "polls"
COLLECTION_USER_EXPERIENCE = "user_experience"
COLLECTION_CORE_CREDIT = "core_credit"

DUAL_HOMED_COLLECTIONS = (
    COLLECTION_ROLE_MAPPINGS,
    COLLECTION_TEMPORARY_ROLES,
    COLLECTION_POLLS,
    COLLECTION_USER_EXPERIENCE,
    COLLECTION_CORE_CREDIT,
)

STORAGE_MODES = {"auto", "file"}

# Expiration scheduler
SCHEDULER_FLOOR_SECONDS = 10
SCHEDULER_CEILING_SECONDS = 300
SCHEDULER_IDLE_SECONDS = 60
SCHEDULER_CONCURRENCY = 5
SCHEDULER_BATCH_DELAY_SECONDS = 0.1

# (upper bound of remaining time, re-arm interval) in seconds
REARM_TIERS = (
    (120, 10),
    (600, 30),
    (3600, 120),
)

# Experience batching
XP_FLUSH_INTERVAL_SECONDS = 5.0
XP_MAX_PENDING_KEYS = 100

TEMP_ROLE_EXPIRED_REASON = "Temporary role expired"

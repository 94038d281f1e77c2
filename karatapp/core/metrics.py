from prometheus_client import Counter, Gauge, Histogram

# Auth events
AUTH_EVENTS = Counter(
    "karatapp_auth_events_total",
    "Total number of authentication events",
    ["event", "status"],  # event: sign_up, sign_in, sign_out, refresh, restore; status: success, error
)

# Object storage operations
STORAGE_OPERATIONS = Counter(
    "karatapp_storage_operations_total",
    "Total number of object storage operations",
    ["operation", "bucket", "status"],  # operation: upload, list, remove, sign
)

# Database operations
DB_OPERATIONS = Counter(
    "karatapp_db_operations_total",
    "Total number of database operations",
    ["operation", "table", "status"],  # operation: insert, update, delete; status: success, error
)

# Retried backend calls
RETRY_ATTEMPTS = Counter(
    "karatapp_retry_attempts_total",
    "Total number of retried backend calls",
    ["operation"],
)

# Published content events
CONTENT_EVENTS = Counter(
    "karatapp_content_events_total",
    "Total number of published content events",
    ["object_type", "event"],
)

# Attachment edit save duration
ATTACHMENT_SAVE_DURATION = Histogram(
    "karatapp_attachment_save_duration_seconds",
    "Time spent saving an attachment edit session",
    ["kind"],  # kind: kata, ohyo
    buckets=(0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0),
)

# Password breach API latency
BREACH_CHECK_DURATION = Histogram(
    "karatapp_breach_check_duration_seconds",
    "Time spent on password breach range queries",
    ["status"],  # status: ok, breached, error
    buckets=(0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0),
)

# Event loop lag
EVENT_LOOP_LAG = Histogram(
    "karatapp_event_loop_lag_seconds",
    "Delay between the expected and actual wake-up of the monitor loop",
    buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0),
)

# Database pool occupancy
DB_POOL_STATS = Gauge(
    "karatapp_db_pool_connections",
    "Database connection pool state",
    ["state"],  # state: capacity, available, acquired, overflow
)

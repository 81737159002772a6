import os

REDIS_URL = os.getenv("REDIS_URL", "redis://redis:6379")

# URLs dos processadores de pagamento
PROCESSOR_URLS = {
    "default": os.getenv("PAYMENT_PROCESSOR_URL_DEFAULT", "http://payment-processor-default:8080"),
    "fallback": os.getenv("PAYMENT_PROCESSOR_URL_FALLBACK", "http://payment-processor-fallback:8080"),
}
PROCESSORS = ("default", "fallback")

# Health checks (seconds)
HEALTH_CHECK_INTERVAL = float(os.getenv("HEALTH_CHECK_INTERVAL", 5))
HEALTH_CHECK_TIMEOUT = float(os.getenv("HEALTH_CHECK_TIMEOUT", 2))
HEALTH_CHECK_STAGGER = float(os.getenv("HEALTH_CHECK_STAGGER", 0.2))
HEALTH_CACHE_TTL = int(os.getenv("HEALTH_CACHE_TTL", 30))
HEALTH_CACHE_KEY = "health_checker:status"

# Delivery
PROCESSOR_TIMEOUTS = {
    "default": float(os.getenv("PROCESSOR_TIMEOUT_DEFAULT", 5)),
    "fallback": float(os.getenv("PROCESSOR_TIMEOUT_FALLBACK", 2)),
}
MAX_ATTEMPTS = int(os.getenv("MAX_ATTEMPTS", 3))
RETRY_BACKOFF = float(os.getenv("RETRY_BACKOFF", 0.1))
HIGH_LATENCY_THRESHOLD_MS = int(os.getenv("HIGH_LATENCY_THRESHOLD_MS", 1000))

# Worker pool
WORKER_POOL_SIZE = int(os.getenv("WORKER_POOL_SIZE", 16))
DEQUEUE_IDLE_SLEEP = float(os.getenv("DEQUEUE_IDLE_SLEEP", 0.2))
SHUTDOWN_GRACE = float(os.getenv("SHUTDOWN_GRACE", 5))
RUN_WORKERS = os.getenv("RUN_WORKERS", "true").lower() in ("1", "true", "yes")

# Intake queue
QUEUE_ORDERING = os.getenv("QUEUE_ORDERING", "fifo")
PAYMENT_QUEUE_KEY = "payments:queue"
PAYMENT_PRIORITY_QUEUE_KEY = "payments:priority_queue"

# Outcome recording
PROCESSED_GUARD_PREFIX = "processed"
PROCESSED_GUARD_TTL = int(os.getenv("PROCESSED_GUARD_TTL", 3600))
PAYMENTS_LOG_KEY = "payments_log"
TOTAL_REQUESTS_PREFIX = "totalRequests"
TOTAL_AMOUNT_PREFIX = "totalAmount"
SUMMARY_SCORE_FIELD = os.getenv("SUMMARY_SCORE_FIELD", "processedAt")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

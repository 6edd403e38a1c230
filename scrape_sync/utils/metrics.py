"""Prometheus metrics definitions"""

from prometheus_client import Counter, Histogram, Gauge


# Run lifecycle metrics
scrape_runs_total = Counter(
    'scrape_runs_total',
    'Scrape runs by terminal status',
    labelnames=['vendor', 'status']  # success, failed, cancelled
)

scrape_run_duration = Histogram(
    'scrape_run_duration_seconds',
    'Wall-clock duration of a scrape run',
    labelnames=['vendor'],
    buckets=[15, 30, 60, 120, 300, 600, 1200]  # up to 20 minutes
)

scrape_in_progress = Gauge(
    'scrape_in_progress',
    'Whether a scrape run is active in this process (0/1)'
)

concurrency_rejections = Counter(
    'scrape_concurrency_rejections_total',
    'Runs rejected because another scrape was in flight'
)

# Ingestion metrics
transactions_ingested = Counter(
    'transactions_ingested_total',
    'Transactions routed through the upsert engine',
    labelnames=['vendor', 'outcome']  # saved, updated, duplicate, failed
)

category_resolutions = Counter(
    'category_resolutions_total',
    'Resolved categories by provenance',
    labelnames=['source']  # cache, rule, mapping, scraper, fallback, none
)

ownership_conflicts = Counter(
    'card_ownership_conflicts_total',
    'Scraped accounts skipped because another credential owns them',
    labelnames=['vendor']
)

# Infrastructure metrics
run_state_saves = Counter(
    'run_state_saves_total',
    'Number of run state snapshot saves',
    labelnames=['status']  # success, failure
)

redis_connection_healthy = Gauge(
    'redis_connection_healthy',
    'Whether Redis (run state store) is alive (0/1)'
)

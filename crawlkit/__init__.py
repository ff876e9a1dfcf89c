"""Crawl orchestration engine.

Schedules HTTP and browser fetches across many hosts from a durable queue,
adapts concurrency to system load, rotates identities to stay unblocked, and
turns results into deduplicated, diffable, exportable datasets.

Key modules:
    models          -- CrawlRequest, CrawlResult, CrawlJob, Session, Dataset and friends
    errors          -- exception hierarchy (validation, fetch, anti-bot, strategy chain)
    config          -- CrawlerConfig, from_env(), merge_config()
    normalizer      -- URL normalization and unique keys
    queue_strategy  -- BFS / DFS scoring
    request_queue   -- PersistentRequestQueue over Redis or in-memory backends
    link_filter     -- link extraction and depth/domain filtering
    discovery       -- URL include/exclude patterns, robots.txt cache, sitemap seeding
    stealth_headers -- User-Agent pool and consistent browser headers
    fingerprint     -- FingerprintGenerator with LRU cache
    proxy_rotator   -- per-host least-recently-used proxy rotation
    session_pool    -- host-scoped sessions with forward-only health
    detectors       -- CAPTCHA and Cloudflare challenge detection
    resource_monitor-- Snapshotter for scheduler lag and memory
    controller      -- ConcurrencyController over a ThreadPoolExecutor
    strategies      -- scale up / scale down strategies
    autoscaled_pool -- AutoscaledPool dispatch loop
    http_client     -- HttpClient (curl_cffi / requests)
    handlers        -- RequestHandler implementations and execute_with_session()
    engine          -- Crawler and its event stream
    limiter         -- JobResourceLimiter
    dataset         -- DatasetManager, content hashing, diff_datasets()
    exporters       -- JSON, CSV and XML export
    metrics         -- MetricsCollector and ErrorTracker
    rate_limiter    -- DomainRateLimiter
    backoff         -- BackoffStrategy for retry delays
    storage         -- StorageBase and JsonlResultStorage
    seo             -- analyze_seo()
    jobs            -- JobManager
    platforms       -- Twitter, Instagram and TikTok strategy chains
"""

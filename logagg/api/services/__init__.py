"""Core subsystems of the log aggregator.

- ingestion.py (broker message normalization, handler, partition consumers)
- tenant_authority.py (API-key validation and issuance, key-type guards)
- alert_engine.py (threshold evaluation, alert lifecycle, trends)
- cache.py (tenant-namespaced TTL cache and key builder)
- rate_limiter.py (sliding-window admission control)
- logs_service.py (log write path with enrichment/retry, cached reads)
"""

# Import side-effects are avoided here; modules are imported by routers/state as needed.

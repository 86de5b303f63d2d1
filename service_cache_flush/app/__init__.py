"""
Cache Flush Service package.

This package clears application cache layers on request and keeps an audit
trail of every flush. It provides:

- app.main: API surface for flushes, audit queries and health.
- app.coordinator: Runs one flush operation across layers in priority order.
- app.registry: Layer configuration (JSON file or PostgreSQL).
- app.executors: Per-layer flush adapters (Redis key spaces, CDN purge).
- app.tracking: Operation and per-layer status persistence.
- app.rebuild: Queued follow-up rebuild work for cleared layers.
- app.auto_flush: Periodic flushing of layers that opt in.

Guidelines:
- A failing layer never stops the remaining layers.
- Audit store failures abort the operation; never report unrecorded work.
- Rebuild work is handed off, never awaited by the flush caller.
"""

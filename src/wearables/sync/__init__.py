"""Measurement sync infrastructure for CareLink.

Modules:
    orchestrator — Pull, normalize and persist one user's measurements
    webhook      — Parse provider notifications, detach processing
    scheduler    — Periodic poll of due connections
    tasks        — Supervised background tasks, drained on shutdown
    dedup        — Dedup keys and idempotent upsert SQL
"""

"""Step sync infrastructure.

Modules:
    engine       — sync_one / sync_yesterday / sync_backfill for one user
    scheduler    — Nightly fleet sync at local midnight, on-demand requests
    singleflight — Per-key call coalescing (token refreshes)
"""

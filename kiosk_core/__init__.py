# =============================================================================
# kiosk_core/__init__.py
# Offline Cache, Sync and Audit Core for the Kiosk
# =============================================================================
"""
Offline-first data layer for the kiosk.

Subpackages:
    kiosk_core.offline   - local SQLite mirror, sync engine, audit, tile cache
    kiosk_core.data      - remote (Supabase) source of truth
    kiosk_core.errors    - exception hierarchy and error handlers
    kiosk_core.logging   - logging configuration
"""

__version__ = "1.0.0"

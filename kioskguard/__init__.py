"""
Self-healing control layer for unattended kiosk shells.

Subpackages:
- recovery: crash classification, bounded auto-reload and blank-screen polling per UI surface
- watchdog: external process watchdog and heartbeat monitor
- updater: A/B buffered content updater and versioned rollback ledger
- service: supervisor process and its HTTP surface
"""

__version__ = "0.1.0"

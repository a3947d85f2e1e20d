"""Halaxy sync infrastructure.

Modules:
    orchestrator - Full and incremental (webhook) sync
    audit        - sync_log bookkeeping and health derivation
    reconciler   - Interval-scheduled full reconciliation (APScheduler)
"""

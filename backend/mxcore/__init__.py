# backend/mxcore/__init__.py
"""
Maintenance compliance engine.

Usage ledger, compliance evaluation, work orders, inventory and the
release gate. Domain code lives in mxcore/apps/<app>/; cron entry points
in mxcore/jobs/.
"""

"""
Inventory ledger: append-only stock movements, a materialised
on-hand / reserved projection, and work-order reservations.
"""

from . import models  # noqa: F401

"""
Usage ledger.

Append-only flight-minute / cycle events per aircraft and per component,
with a lazily folded snapshot cache.
"""

from . import models  # noqa: F401

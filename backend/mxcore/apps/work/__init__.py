"""
Work orders: lifecycle, task sign-off and parts reservations.
"""

from . import models  # noqa: F401

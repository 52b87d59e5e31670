"""
Audit module.

Append-only trail of work order transitions, sign-offs, inventory
mutations and integrity alarms.
"""

from . import models  # noqa: F401

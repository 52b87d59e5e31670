"""
Compliance evaluator: per-trigger margins and due states.
"""

from . import models  # noqa: F401

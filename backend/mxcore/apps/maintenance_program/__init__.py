"""
Maintenance program module (programs, triggers, task templates).

Only models and schemas are imported at package import time; services
import other apps and are loaded on demand.
"""

from . import models, schemas  # noqa: F401

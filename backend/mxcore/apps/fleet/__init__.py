"""
Fleet module.

Aircraft, components, installation history and the airworthiness flag
the release flow updates.
"""

from . import models  # noqa: F401

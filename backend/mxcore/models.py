# backend/mxcore/models.py
"""
Import ORM models from each app so that Base.metadata.create_all() sees
every table. The model classes live in mxcore/apps/*/models.py.
"""

from .apps.audit import models as audit_models                # audit trail
from .apps.fleet import models as fleet_models                # aircraft + components
from .apps.usage import models as usage_models                # usage ledger + snapshots
from .apps.maintenance_program import models as maintenance_program_models  # programs + triggers
from .apps.compliance import models as compliance_models      # baselines + statuses
from .apps.inventory import models as inventory_models        # stock ledger + reservations
from .apps.work import models as work_models                  # work orders + tasks

__all__ = [
    "audit_models",
    "fleet_models",
    "usage_models",
    "maintenance_program_models",
    "compliance_models",
    "inventory_models",
    "work_models",
]

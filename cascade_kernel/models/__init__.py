"""ORM models for every collection the cascade reads or writes.

Importing this package registers all tables on ``Base.metadata``.
"""

from cascade_kernel.models.accounting import (
    BookkeepingAccountModel,
    JournalEntryModel,
    JournalLineModel,
)
from cascade_kernel.models.ledger import LedgerEventModel
from cascade_kernel.models.orders import CustomerOrderModel
from cascade_kernel.models.overhead import OverheadCostPeriodModel
from cascade_kernel.models.production import (
    BatchReservationModel,
    ConsumptionRecordModel,
    PoReservationModel,
    ProductionTaskModel,
    WorkSessionModel,
)
from cascade_kernel.models.purchasing import (
    InventoryBatchModel,
    MaterialModel,
    PurchaseOrderModel,
)

__all__ = [
    "BatchReservationModel",
    "BookkeepingAccountModel",
    "ConsumptionRecordModel",
    "CustomerOrderModel",
    "InventoryBatchModel",
    "JournalEntryModel",
    "JournalLineModel",
    "LedgerEventModel",
    "MaterialModel",
    "OverheadCostPeriodModel",
    "PoReservationModel",
    "ProductionTaskModel",
    "PurchaseOrderModel",
    "WorkSessionModel",
]

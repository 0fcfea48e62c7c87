import enum


class LocationKind(str, enum.Enum):
    warehouse = "WAREHOUSE"
    technician = "TECHNICIAN"
    crew = "CREW"


class MaterialOwnership(str, enum.Enum):
    individual = "INDIVIDUAL"
    pooled = "POOLED"


class MovementKind(str, enum.Enum):
    transfer = "TRANSFER"
    consumption = "CONSUMPTION"
    adjustment = "ADJUSTMENT"
    damaged = "DAMAGED"


class ConsumptionKind(str, enum.Enum):
    used = "USED"
    damaged = "DAMAGED"


class StockStatus(str, enum.Enum):
    low = "low"
    normal = "normal"
    out_of_stock = "out_of_stock"

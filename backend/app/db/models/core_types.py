import enum


class WarehouseType(str, enum.Enum):
    physical = "physical"
    virtual = "virtual"


class MovementType(str, enum.Enum):
    reserve = "RESERVE"
    release = "RELEASE"
    consume = "CONSUME"
    transfer = "TRANSFER"
    adjustment_plus = "ADJUSTMENT_PLUS"
    adjustment_minus = "ADJUSTMENT_MINUS"


class OrderStatus(str, enum.Enum):
    new = "new"
    processing = "processing"
    confirmed = "confirmed"
    shipped = "shipped"
    delivered = "delivered"
    cancelled = "cancelled"


class OrderItemStatus(str, enum.Enum):
    new = "new"
    reserved = "reserved"
    confirmed = "confirmed"
    shipped = "shipped"
    delivered = "delivered"
    cancelled = "cancelled"


class ProcurementStatus(str, enum.Enum):
    pending = "pending"
    ordered = "ordered"
    failed = "failed"
    cancelled = "cancelled"
    # covered by own stock, nothing to buy
    in_stock = "in_stock"


class SupplierOrderStatus(str, enum.Enum):
    draft = "draft"
    confirmed = "confirmed"
    sent = "sent"
    error = "error"
    cancelled = "cancelled"


class MarkupType(str, enum.Enum):
    percentage = "percentage"
    fixed = "fixed"


class RoundingRule(str, enum.Enum):
    none = "none"
    up_10 = "up_10"
    up_50 = "up_50"
    up_100 = "up_100"
    down_10 = "down_10"
    down_50 = "down_50"
    down_100 = "down_100"
    nearest_10 = "nearest_10"
    nearest_50 = "nearest_50"
    nearest_100 = "nearest_100"
    ending_99 = "99_ending"
    ending_90 = "90_ending"


class SyncRunStatus(str, enum.Enum):
    running = "running"
    completed = "completed"
    failed = "failed"


class OutboxStatus(str, enum.Enum):
    pending = "pending"
    done = "done"
    dead = "dead"

"""Client-side sync engine for the Storix spreadsheet backend."""

from .config import SyncConfig
from .engine import FlushResult, SyncEngine, SyncResult
from .entity_store import EntityStore
from .errors import (
    ConfigurationError,
    MalformedPayloadError,
    RemoteLogicError,
    StorixSyncError,
    TransportError,
    TransportTimeout,
    UnknownTableError,
)
from .joins import (
    create_parametric_selector,
    create_selector,
    parse_attributes,
    select_joined_customers,
    select_joined_movements,
    select_joined_orders,
    select_joined_product_by_id,
    select_joined_products,
    select_joined_purchases,
    select_joined_sales,
    select_joined_stock,
    select_joined_stock_by_id,
    select_joined_suppliers,
    select_joined_variant_by_id,
    select_joined_variants,
)
from .pending import PendingMutation, PendingStore
from .scheduler import SyncScheduler
from .service import SyncService
from .transport import JsonpTransport, ReplyChannel

__all__ = [
    "ConfigurationError",
    "EntityStore",
    "FlushResult",
    "JsonpTransport",
    "MalformedPayloadError",
    "PendingMutation",
    "PendingStore",
    "RemoteLogicError",
    "ReplyChannel",
    "StorixSyncError",
    "SyncConfig",
    "SyncEngine",
    "SyncResult",
    "SyncScheduler",
    "SyncService",
    "TransportError",
    "TransportTimeout",
    "UnknownTableError",
    "create_parametric_selector",
    "create_selector",
    "parse_attributes",
    "select_joined_customers",
    "select_joined_movements",
    "select_joined_orders",
    "select_joined_product_by_id",
    "select_joined_products",
    "select_joined_purchases",
    "select_joined_sales",
    "select_joined_stock",
    "select_joined_stock_by_id",
    "select_joined_suppliers",
    "select_joined_variant_by_id",
    "select_joined_variants",
]

"""Constants for the Storix sync engine."""

from __future__ import annotations

TABLE_PRODUCTS = "Products"
TABLE_VARIANTS = "Variants"
TABLE_STOCK = "Stock"
TABLE_CUSTOMERS = "Customers"
TABLE_SUPPLIERS = "Suppliers"
TABLE_ORDERS = "Orders"
TABLE_SALES = "Sales"
TABLE_PURCHASES = "Purchases"
TABLE_STOCK_MOVEMENTS = "StockMovements"

TABLES: tuple[str, ...] = (
    TABLE_PRODUCTS,
    TABLE_VARIANTS,
    TABLE_STOCK,
    TABLE_CUSTOMERS,
    TABLE_SUPPLIERS,
    TABLE_ORDERS,
    TABLE_SALES,
    TABLE_PURCHASES,
    TABLE_STOCK_MOVEMENTS,
)

# Reply channel name the remote wraps every response in: storix({...});
JSONP_CALLBACK = "storix"
SCRIPT_URL_TEMPLATE = "https://script.google.com/macros/s/{script_id}/exec"

# Response keys that are not tables in a syncAll payload
META_KEY = "__meta__"
NOW_KEY = "now"

ACTION_SYNC_ALL = "syncAll"
ACTION_SYNC_CHANGES = "syncChanges"
ACTION_GET_SETTINGS = "getSettings"
ACTION_GET = "get"
ACTION_CREATE = "create"
ACTION_UPDATE = "update"
ACTION_DELETE = "delete"

WRITE_ACTIONS: tuple[str, ...] = (ACTION_CREATE, ACTION_UPDATE, ACTION_DELETE)

CONF_SCRIPT_URL = "script_url"
CONF_SCRIPT_ID = "script_id"
CONF_SYNC_INTERVAL = "sync_interval"
CONF_REQUEST_TIMEOUT = "request_timeout"
CONF_CALLBACK_NAME = "callback_name"
CONF_PENDING_PATH = "pending_path"
CONF_TABLES = "tables"

DEFAULT_SYNC_INTERVAL = 20
MIN_SYNC_INTERVAL = 5
DEFAULT_REQUEST_TIMEOUT = 6.0
DEFAULT_PENDING_PATH = ":memory:"

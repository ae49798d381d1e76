"""Memoized relational views over the entity store.

Selectors take an :class:`~storix_sync.entity_store.EntityStore` and return
plain ``dict`` views; related records nested in a view are the store's own
read-only records. A selector recomputes only when the identity of one of
its input tables changed since its previous call, so repeated reads while
unrelated tables churn return the very same list object.

Foreign keys that point at missing records resolve to ``None``; the views
never raise on dangling references and never mutate the store.
"""

from __future__ import annotations

import json
from collections import defaultdict
from collections.abc import Callable, Iterable, Mapping, Sequence
from typing import Any

from .const import (
    TABLE_CUSTOMERS,
    TABLE_ORDERS,
    TABLE_PRODUCTS,
    TABLE_PURCHASES,
    TABLE_SALES,
    TABLE_STOCK,
    TABLE_STOCK_MOVEMENTS,
    TABLE_SUPPLIERS,
    TABLE_VARIANTS,
)
from .entity_store import EntityStore, Record, Table
from .errors import MalformedPayloadError

View = dict[str, Any]


class Selector:
    """Cache the last result of ``combiner`` keyed on input table identity."""

    __slots__ = ("tables", "combiner", "_inputs", "_result", "recomputations")

    def __init__(self, tables: Sequence[str], combiner: Callable[..., Any]) -> None:
        self.tables = tuple(tables)
        self.combiner = combiner
        self._inputs: tuple[Table, ...] | None = None
        self._result: Any = None
        self.recomputations = 0

    def __call__(self, store: EntityStore) -> Any:
        inputs = tuple(store.table(name) for name in self.tables)
        if self._inputs is None or not _same_inputs(inputs, self._inputs):
            self._result = self.combiner(*inputs)
            self._inputs = inputs
            self.recomputations += 1
        return self._result


class ParametricSelector:
    """Like :class:`Selector` but keyed on an extra record id argument."""

    __slots__ = ("tables", "combiner", "maxsize", "_cache", "recomputations")

    def __init__(self, tables: Sequence[str], combiner: Callable[..., Any], *, maxsize: int = 32) -> None:
        self.tables = tuple(tables)
        self.combiner = combiner
        self.maxsize = maxsize
        self._cache: dict[str, tuple[tuple[Table, ...], Any]] = {}
        self.recomputations = 0

    def __call__(self, store: EntityStore, record_id: str) -> Any:
        key = str(record_id)
        inputs = tuple(store.table(name) for name in self.tables)
        cached = self._cache.pop(key, None)
        if cached is not None and _same_inputs(inputs, cached[0]):
            result = cached[1]
        else:
            result = self.combiner(*inputs, key)
            self.recomputations += 1
        self._cache[key] = (inputs, result)
        while len(self._cache) > self.maxsize:
            self._cache.pop(next(iter(self._cache)))
        return result


def create_selector(tables: Sequence[str], combiner: Callable[..., Any]) -> Selector:
    return Selector(tables, combiner)


def create_parametric_selector(tables: Sequence[str], combiner: Callable[..., Any]) -> ParametricSelector:
    return ParametricSelector(tables, combiner)


def _same_inputs(left: tuple[Table, ...], right: tuple[Table, ...]) -> bool:
    return len(left) == len(right) and all(a is b for a, b in zip(left, right))


# ----------------------------------------------------------------------
# JSON encoded fields


def decode_json_field(value: Any) -> Any:
    """Decode a JSON-encoded column, raising :class:`MalformedPayloadError`."""

    if not isinstance(value, str | bytes | bytearray):
        raise MalformedPayloadError(f"expected JSON text, got {type(value).__name__}", raw=value)
    try:
        return json.loads(value)
    except (TypeError, ValueError) as err:
        raise MalformedPayloadError(f"invalid JSON field: {err}", raw=value) from err


def parse_attributes(value: Any) -> dict[str, Any]:
    """Return a variant attribute mapping from whatever the sheet stored.

    Accepts a mapping, a JSON object string, or the legacy ``size=M,color=red``
    form. Anything unusable yields an empty dict.
    """

    if isinstance(value, Mapping):
        return dict(value)
    if value is None or value == "":
        return {}
    try:
        decoded = decode_json_field(value)
    except MalformedPayloadError:
        decoded = None
    if isinstance(decoded, Mapping):
        return dict(decoded)
    if isinstance(decoded, str):
        # double encoded
        return parse_attributes(decoded)
    if not isinstance(value, str):
        return {}
    pairs: dict[str, Any] = {}
    for part in value.split(","):
        key, sep, raw = part.partition("=")
        if sep and key.strip() and raw.strip():
            pairs[key.strip()] = raw.strip()
    return pairs


# ----------------------------------------------------------------------
# helpers


def _group_by(rows: Iterable[Record], key: str) -> dict[str, list[Record]]:
    grouped: dict[str, list[Record]] = defaultdict(list)
    for row in rows:
        value = row.get(key)
        if value is None or value == "":
            continue
        grouped[str(value)].append(row)
    return grouped


def _lookup(table: Table, value: Any) -> Record | None:
    if value is None or value == "":
        return None
    return table.get(str(value))


def _product_stock(
    product_id: str,
    variant_ids: Iterable[str],
    stock_by_product: Mapping[str, list[Record]],
    stock_by_variant: Mapping[str, list[Record]],
) -> list[Record]:
    seen: set[str] = set()
    rows: list[Record] = []
    candidates = list(stock_by_product.get(product_id, ()))
    for variant_id in variant_ids:
        candidates.extend(stock_by_variant.get(variant_id, ()))
    for row in candidates:
        if row["id"] in seen:
            continue
        seen.add(row["id"])
        rows.append(row)
    return rows


def _variant_view(variant: Record) -> View:
    return {**variant, "attributes": parse_attributes(variant.get("attributes"))}


# ----------------------------------------------------------------------
# products


def _join_products(products: Table, variants: Table, stock: Table) -> list[View]:
    variants_by_product = _group_by(variants.values(), "productId")
    stock_by_product = _group_by(stock.values(), "productId")
    stock_by_variant = _group_by(stock.values(), "variantId")
    views: list[View] = []
    for product in products.values():
        product_variants = variants_by_product.get(product["id"], [])
        views.append(
            {
                **product,
                "variants": [_variant_view(v) for v in product_variants],
                "stock": _product_stock(
                    product["id"],
                    (v["id"] for v in product_variants),
                    stock_by_product,
                    stock_by_variant,
                ),
            }
        )
    return views


def _join_product_by_id(products: Table, variants: Table, stock: Table, product_id: str) -> View | None:
    product = products.get(product_id)
    if product is None:
        return None
    product_variants = [v for v in variants.values() if str(v.get("productId")) == product_id]
    variant_ids = {v["id"] for v in product_variants}
    product_stock = [
        s
        for s in stock.values()
        if str(s.get("productId")) == product_id or str(s.get("variantId")) in variant_ids
    ]
    return {
        **product,
        "variants": [_variant_view(v) for v in product_variants],
        "stock": product_stock,
    }


# ----------------------------------------------------------------------
# variants


def _join_variants(variants: Table, products: Table, stock: Table) -> list[View]:
    stock_by_variant = _group_by(stock.values(), "variantId")
    return [
        {
            **_variant_view(variant),
            "product": _lookup(products, variant.get("productId")),
            "stock": stock_by_variant.get(variant["id"], []),
        }
        for variant in variants.values()
    ]


def _join_variant_by_id(variants: Table, products: Table, stock: Table, variant_id: str) -> View | None:
    variant = variants.get(variant_id)
    if variant is None:
        return None
    return {
        **_variant_view(variant),
        "product": _lookup(products, variant.get("productId")),
        "stock": [s for s in stock.values() if str(s.get("variantId")) == variant_id],
    }


# ----------------------------------------------------------------------
# stock


def _stock_view(
    row: Record, products: Table, variants: Table, movements: list[Record]
) -> View:
    variant = _lookup(variants, row.get("variantId"))
    product_id = row.get("productId")
    if (product_id is None or product_id == "") and variant is not None:
        product_id = variant.get("productId")
    metadata = row.get("metadata")
    return {
        **row,
        "metadata": parse_attributes(metadata) if metadata not in (None, "") else {},
        "product": _lookup(products, product_id),
        "variant": variant,
        "movements": movements,
    }


def _join_stock(stock: Table, products: Table, variants: Table, movements: Table) -> list[View]:
    movements_by_stock = _group_by(movements.values(), "stockId")
    return [
        _stock_view(row, products, variants, movements_by_stock.get(row["id"], []))
        for row in stock.values()
    ]


def _join_stock_by_id(
    stock: Table, products: Table, variants: Table, movements: Table, stock_id: str
) -> View | None:
    row = stock.get(stock_id)
    if row is None:
        return None
    own_movements = [m for m in movements.values() if str(m.get("stockId")) == stock_id]
    return _stock_view(row, products, variants, own_movements)


# ----------------------------------------------------------------------
# parties and documents


def _join_customers(customers: Table, orders: Table, sales: Table) -> list[View]:
    orders_by_customer = _group_by(orders.values(), "customerId")
    sales_by_customer = _group_by(sales.values(), "customerId")
    return [
        {
            **customer,
            "orders": orders_by_customer.get(customer["id"], []),
            "sales": sales_by_customer.get(customer["id"], []),
        }
        for customer in customers.values()
    ]


def _join_suppliers(suppliers: Table, purchases: Table, stock: Table) -> list[View]:
    purchases_by_supplier = _group_by(purchases.values(), "supplierId")
    stock_by_supplier = _group_by(stock.values(), "supplierId")
    return [
        {
            **supplier,
            "purchases": purchases_by_supplier.get(supplier["id"], []),
            "stock_items": stock_by_supplier.get(supplier["id"], []),
        }
        for supplier in suppliers.values()
    ]


def _documents_joiner(party_key: str, party_field: str, item_key: str) -> Callable[[Table, Table, Table], list[View]]:
    def join(documents: Table, parties: Table, movements: Table) -> list[View]:
        items_by_document = _group_by(movements.values(), item_key)
        return [
            {
                **document,
                party_field: _lookup(parties, document.get(party_key)),
                "items": items_by_document.get(document["id"], []),
            }
            for document in documents.values()
        ]

    return join


def _join_movements(
    movements: Table,
    products: Table,
    variants: Table,
    stock: Table,
    orders: Table,
    sales: Table,
    purchases: Table,
) -> list[View]:
    return [
        {
            **movement,
            "product": _lookup(products, movement.get("productId")),
            "variant": _lookup(variants, movement.get("variantId")),
            "stock": _lookup(stock, movement.get("stockId")),
            "order": _lookup(orders, movement.get("orderId")),
            "sale": _lookup(sales, movement.get("saleId")),
            "purchase": _lookup(purchases, movement.get("purchaseId")),
        }
        for movement in movements.values()
    ]


select_joined_products = create_selector((TABLE_PRODUCTS, TABLE_VARIANTS, TABLE_STOCK), _join_products)
select_joined_product_by_id = create_parametric_selector(
    (TABLE_PRODUCTS, TABLE_VARIANTS, TABLE_STOCK), _join_product_by_id
)
select_joined_variants = create_selector((TABLE_VARIANTS, TABLE_PRODUCTS, TABLE_STOCK), _join_variants)
select_joined_variant_by_id = create_parametric_selector(
    (TABLE_VARIANTS, TABLE_PRODUCTS, TABLE_STOCK), _join_variant_by_id
)
select_joined_stock = create_selector(
    (TABLE_STOCK, TABLE_PRODUCTS, TABLE_VARIANTS, TABLE_STOCK_MOVEMENTS), _join_stock
)
select_joined_stock_by_id = create_parametric_selector(
    (TABLE_STOCK, TABLE_PRODUCTS, TABLE_VARIANTS, TABLE_STOCK_MOVEMENTS), _join_stock_by_id
)
select_joined_customers = create_selector((TABLE_CUSTOMERS, TABLE_ORDERS, TABLE_SALES), _join_customers)
select_joined_suppliers = create_selector((TABLE_SUPPLIERS, TABLE_PURCHASES, TABLE_STOCK), _join_suppliers)
select_joined_orders = create_selector(
    (TABLE_ORDERS, TABLE_CUSTOMERS, TABLE_STOCK_MOVEMENTS),
    _documents_joiner("customerId", "customer", "orderId"),
)
select_joined_sales = create_selector(
    (TABLE_SALES, TABLE_CUSTOMERS, TABLE_STOCK_MOVEMENTS),
    _documents_joiner("customerId", "customer", "saleId"),
)
select_joined_purchases = create_selector(
    (TABLE_PURCHASES, TABLE_SUPPLIERS, TABLE_STOCK_MOVEMENTS),
    _documents_joiner("supplierId", "supplier", "purchaseId"),
)
select_joined_movements = create_selector(
    (
        TABLE_STOCK_MOVEMENTS,
        TABLE_PRODUCTS,
        TABLE_VARIANTS,
        TABLE_STOCK,
        TABLE_ORDERS,
        TABLE_SALES,
        TABLE_PURCHASES,
    ),
    _join_movements,
)


__all__ = [
    "ParametricSelector",
    "Selector",
    "View",
    "create_parametric_selector",
    "create_selector",
    "decode_json_field",
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

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Iterator

from pos_sync.core.errors import ValidationError
from pos_sync.domain.time_utils import parse_timestamp


class FieldKind(str, Enum):
    TEXT = "text"
    INTEGER = "integer"
    DECIMAL = "decimal"
    BOOLEAN = "boolean"
    TIMESTAMP = "timestamp"
    REFERENCE = "reference"
    LIST = "list"


@dataclass(frozen=True)
class FieldSpec:
    name: str
    kind: FieldKind
    required: bool = False
    target: str | None = None
    items: tuple["FieldSpec", ...] = ()


@dataclass(frozen=True)
class PayloadSchema:
    """Variante tipada del payload de una tabla sincronizable.

    Los campos no declarados se conservan tal cual: el servidor puede añadir
    columnas sin romper clientes antiguos. Sólo se validan los declarados.
    """

    table: str
    fields: tuple[FieldSpec, ...]
    _by_name: dict[str, FieldSpec] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_by_name", {spec.name: spec for spec in self.fields})

    def field(self, name: str) -> FieldSpec | None:
        return self._by_name.get(name)

    @property
    def reference_paths(self) -> tuple[str, ...]:
        paths: list[str] = []
        for spec in self.fields:
            if spec.kind is FieldKind.REFERENCE:
                paths.append(spec.name)
            elif spec.kind is FieldKind.LIST:
                paths.extend(
                    f"{spec.name}[].{item.name}" for item in spec.items if item.kind is FieldKind.REFERENCE
                )
        return tuple(paths)

    @property
    def decimal_fields(self) -> frozenset[str]:
        return frozenset(spec.name for spec in self.fields if spec.kind is FieldKind.DECIMAL)


@dataclass(frozen=True)
class SyncPayload:
    table: str
    data: dict[str, Any]


def _text(name: str, required: bool = False) -> FieldSpec:
    return FieldSpec(name, FieldKind.TEXT, required)


def _money(name: str, required: bool = False) -> FieldSpec:
    return FieldSpec(name, FieldKind.DECIMAL, required)


def _int(name: str) -> FieldSpec:
    return FieldSpec(name, FieldKind.INTEGER)


def _flag(name: str) -> FieldSpec:
    return FieldSpec(name, FieldKind.BOOLEAN)


def _when(name: str) -> FieldSpec:
    return FieldSpec(name, FieldKind.TIMESTAMP)


def _ref(name: str, target: str, required: bool = False) -> FieldSpec:
    return FieldSpec(name, FieldKind.REFERENCE, required, target=target)


_AUDIT_FIELDS = (_when("createdAt"), _when("updatedAt"))

SALE_ITEM_FIELDS = (
    _text("id"),
    _ref("productId", "products", required=True),
    _text("productName"),
    _ref("imeiId", "imei_inventory"),
    _ref("batchId", "product_batches"),
    _int("quantity"),
    _money("unitPrice"),
    _money("costPrice"),
    _money("discount"),
    _money("discountPercent"),
    _money("taxRate"),
    _money("taxAmount"),
    _money("subtotal"),
    _money("total"),
)

SALE_PAYMENT_FIELDS = (
    _text("id"),
    _text("method", required=True),
    _money("amount", required=True),
    _text("reference"),
    _ref("tradeInId", "trade_ins"),
)

PAYLOAD_SCHEMAS: dict[str, PayloadSchema] = {
    schema.table: schema
    for schema in (
        PayloadSchema(
            "categories",
            (_text("name", required=True), _ref("parentId", "categories"), _flag("isActive"), *_AUDIT_FIELDS),
        ),
        PayloadSchema(
            "products",
            (
                _text("name", required=True),
                _ref("categoryId", "categories"),
                _text("sku"),
                _text("barcode"),
                _money("costPrice"),
                _money("salePrice"),
                _money("wholesalePrice"),
                _money("minSalePrice"),
                _money("taxRate"),
                _int("stockQuantity"),
                _int("minStockLevel"),
                _int("warrantyDays"),
                _flag("isActive"),
                _flag("trackInventory"),
                _flag("requiresPrescription"),
                *_AUDIT_FIELDS,
            ),
        ),
        PayloadSchema(
            "customers",
            (
                _text("name", required=True),
                _text("phone"),
                _text("email"),
                _money("creditLimit"),
                _money("currentBalance"),
                _money("totalPurchases"),
                _money("totalPaid"),
                _flag("isActive"),
                *_AUDIT_FIELDS,
            ),
        ),
        PayloadSchema(
            "imei_inventory",
            (
                _ref("productId", "products", required=True),
                _text("imei1", required=True),
                _text("status"),
                _money("costPrice"),
                _money("salePrice"),
                _ref("saleId", "sales"),
                _when("soldAt"),
                *_AUDIT_FIELDS,
            ),
        ),
        PayloadSchema(
            "product_batches",
            (
                _ref("productId", "products", required=True),
                _text("batchNumber", required=True),
                _int("quantity"),
                _int("soldQuantity"),
                _money("costPrice"),
                _money("salePrice"),
                _money("mrp"),
                _flag("isBlocked"),
                *_AUDIT_FIELDS,
            ),
        ),
        PayloadSchema(
            "trade_ins",
            (
                _ref("customerId", "customers"),
                _text("deviceBrand", required=True),
                _text("deviceModel"),
                _money("estimatedValue"),
                _money("offeredPrice"),
                _money("agreedPrice"),
                _text("status"),
                _ref("saleId", "sales"),
                *_AUDIT_FIELDS,
            ),
        ),
        PayloadSchema(
            "sales",
            (
                _text("invoiceNumber"),
                _ref("customerId", "customers"),
                FieldSpec("items", FieldKind.LIST, items=SALE_ITEM_FIELDS),
                FieldSpec("payments", FieldKind.LIST, items=SALE_PAYMENT_FIELDS),
                _money("subtotal"),
                _money("discount"),
                _money("taxAmount"),
                _money("total"),
                _money("paidAmount"),
                _money("changeAmount"),
                _money("dueAmount"),
                _text("status"),
                _flag("receiptPrinted"),
                *_AUDIT_FIELDS,
            ),
        ),
        PayloadSchema(
            "repair_orders",
            (
                _text("ticketNumber"),
                _ref("customerId", "customers"),
                _text("deviceBrand"),
                _text("deviceModel"),
                _money("estimatedCost"),
                _money("laborCost"),
                _money("partsCost"),
                _money("totalCost"),
                _money("advancePayment"),
                _money("balanceDue"),
                _text("status"),
                _when("completedAt"),
                _when("deliveredAt"),
                *_AUDIT_FIELDS,
            ),
        ),
    )
}

# Orden de dependencias: una tabla sólo referencia a tablas anteriores o a sí misma.
SYNC_TABLES: tuple[str, ...] = (
    "categories",
    "products",
    "customers",
    "imei_inventory",
    "product_batches",
    "trade_ins",
    "sales",
    "repair_orders",
)


def schema_for(table: str) -> PayloadSchema:
    try:
        return PAYLOAD_SCHEMAS[table]
    except KeyError as exc:
        raise ValidationError(f"Tabla no sincronizable: {table!r}") from exc


def to_decimal(value: Any) -> Decimal:
    if isinstance(value, bool):
        raise ValidationError(f"Importe inválido: {value!r}")
    try:
        if isinstance(value, float):
            return Decimal(repr(value))
        return Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"Importe inválido: {value!r}") from exc


def _normalize_value(spec: FieldSpec, value: Any, path: str) -> Any:
    if value is None:
        if spec.required:
            raise ValidationError(f"Campo obligatorio vacío: {path}")
        return None
    kind = spec.kind
    if kind is FieldKind.DECIMAL:
        parsed = to_decimal(value)
        if not parsed.is_finite():
            raise ValidationError(f"Importe no finito en {path}: {value!r}")
        return str(parsed)
    if kind is FieldKind.INTEGER:
        if isinstance(value, bool):
            raise ValidationError(f"Entero inválido en {path}: {value!r}")
        if isinstance(value, int):
            return value
        try:
            return int(str(value).strip())
        except ValueError as exc:
            raise ValidationError(f"Entero inválido en {path}: {value!r}") from exc
    if kind is FieldKind.BOOLEAN:
        if isinstance(value, bool):
            return value
        if value in (0, 1):
            return bool(value)
        raise ValidationError(f"Booleano inválido en {path}: {value!r}")
    if kind is FieldKind.TIMESTAMP:
        try:
            parse_timestamp(value)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Fecha inválida en {path}: {value!r}") from exc
        return value
    if kind in (FieldKind.TEXT, FieldKind.REFERENCE):
        if not isinstance(value, str):
            raise ValidationError(f"Texto esperado en {path}: {value!r}")
        if spec.required and not value.strip():
            raise ValidationError(f"Campo obligatorio vacío: {path}")
        return value
    if kind is FieldKind.LIST:
        if not isinstance(value, list):
            raise ValidationError(f"Lista esperada en {path}")
        item_schema = PayloadSchema(path, spec.items)
        return [_normalize_mapping(item_schema, item, f"{path}[{index}]") for index, item in enumerate(value)]
    return value


def _normalize_mapping(schema: PayloadSchema, data: Any, path: str) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise ValidationError(f"Objeto esperado en {path}")
    normalized = dict(data)
    for spec in schema.fields:
        if spec.name not in data:
            if spec.required:
                raise ValidationError(f"Falta el campo obligatorio {path}.{spec.name}")
            continue
        normalized[spec.name] = _normalize_value(spec, data[spec.name], f"{path}.{spec.name}")
    return normalized


def parse_payload(table: str, data: Any) -> SyncPayload:
    schema = schema_for(table)
    return SyncPayload(table=table, data=_normalize_mapping(schema, data, table))


def comparable(table: str, field_name: str, value: Any) -> Any:
    """Forma comparable de un valor: importes como ``Decimal`` exacto."""
    schema = PAYLOAD_SCHEMAS.get(table)
    spec = schema.field(field_name) if schema else None
    return _comparable(spec, value)


def _comparable(spec: FieldSpec | None, value: Any) -> Any:
    if value is None or spec is None:
        return value
    if spec.kind is FieldKind.DECIMAL:
        try:
            return to_decimal(value)
        except ValidationError:
            return value
    if spec.kind is FieldKind.LIST and isinstance(value, list):
        item_schema = PayloadSchema(spec.name, spec.items)
        return [
            {key: _comparable(item_schema.field(key), item_value) for key, item_value in item.items()}
            if isinstance(item, dict)
            else item
            for item in value
        ]
    return value


def values_equal(table: str, field_name: str, left: Any, right: Any) -> bool:
    return comparable(table, field_name, left) == comparable(table, field_name, right)


def iter_references(table: str, data: dict[str, Any]) -> Iterator[tuple[str, str]]:
    """Genera ``(ruta, id)`` de cada referencia no nula del payload."""
    schema = PAYLOAD_SCHEMAS.get(table)
    if schema is None or not isinstance(data, dict):
        return
    for path in schema.reference_paths:
        if "[]." in path:
            list_name, item_field = path.split("[].", 1)
            for item in data.get(list_name) or ():
                if isinstance(item, dict) and isinstance(item.get(item_field), str):
                    yield path, item[item_field]
        elif isinstance(data.get(path), str):
            yield path, data[path]


def rewrite_references(table: str, data: dict[str, Any] | None, old_id: str, new_id: str) -> tuple[dict[str, Any] | None, bool]:
    """Devuelve una copia con ``old_id`` sustituido en las rutas de referencia."""
    schema = PAYLOAD_SCHEMAS.get(table)
    if schema is None or not isinstance(data, dict):
        return data, False
    rewritten = dict(data)
    changed = False
    for path in schema.reference_paths:
        if "[]." in path:
            list_name, item_field = path.split("[].", 1)
            items = rewritten.get(list_name)
            if not isinstance(items, list):
                continue
            new_items = []
            for item in items:
                if isinstance(item, dict) and item.get(item_field) == old_id:
                    item = {**item, item_field: new_id}
                    changed = True
                new_items.append(item)
            rewritten[list_name] = new_items
        elif rewritten.get(path) == old_id:
            rewritten[path] = new_id
            changed = True
    return rewritten, changed

"""Data access layer for cashdesk.

This module owns every byte that touches the disk. Business rules live in
:mod:`cashdesk.ledger`; nothing here decides whether a transition is valid.

The public API covers three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Record serialization: turning ledger value types into JSON-ready
   dictionaries and back.
3. The state store: persisting the ledger state (minus the live checkout) as
   a key/value sheet inside an ``openpyxl`` workbook, and rehydrating it at
   startup. A missing or unreadable workbook falls back to seed data.
"""

from __future__ import annotations

import configparser
import io
import json
import os
import zipfile
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import openpyxl
from openpyxl.styles import Font
from openpyxl.utils.exceptions import InvalidFileException
from openpyxl.workbook import Workbook

from . import log
from .constants import EXPECTED_SCHEMA_VERSION, MovementKind, PaymentMethod, SaleType, SheetName
from .models import (
    CashClosure,
    CashMovement,
    CashRegister,
    Customer,
    DocumentRecord,
    FiscalDocument,
    LedgerState,
    LineItem,
    Payment,
    Product,
    Provider,
    Sale,
    Settings,
    TurnSummary,
)


CONFIG_FILE_NAME = "config.ini"
META_SHEET = SheetName.META.value
STATE_SHEET = SheetName.LEDGER_STATE.value
# Excel refuses cells longer than 32767 characters.
CELL_CHUNK_SIZE = 32000

STATE_KEYS = (
    "products",
    "customers",
    "providers",
    "provider_restock",
    "sales",
    "documents",
    "cash_register",
    "cash_closures",
)


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of ``config.ini``."""

    data_file: Path
    schema_version: str
    settings: Settings


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file.

    An explicit path is returned as-is without verification. Otherwise the
    search walks from the current working directory up to the filesystem
    root and returns the first ``config.ini`` found.

    Raises:
        FileNotFoundError: If no configuration file exists along the way.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for directory in (current, *current.parents):
        candidate = directory / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config_path`` into a ``ConfigParser``.

    Raises:
        FileNotFoundError: If the file does not exist after expansion.
    """

    config_path = Path(config_path).expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path, encoding="utf-8")
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a parsed configuration into :class:`ConfigSettings`.

    ``[System] DataFile`` and ``[System] SchemaVersion`` are required. The
    ``[Store]``, ``[Sales]`` and ``[Invoicing]`` sections are optional and
    fall back to the :class:`~cashdesk.models.Settings` defaults. Relative
    data file paths are anchored to ``base_path`` (or the working directory).

    Raises:
        KeyError: If a required entry is missing.
        ValueError: If a numeric or boolean entry cannot be parsed.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw).expanduser()
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    defaults = Settings()
    try:
        settings = Settings(
            tax_rate=Decimal(parser.get("Sales", "TaxRate", fallback=str(defaults.tax_rate))),
            currency=parser.get("Store", "Currency", fallback=defaults.currency),
            company_name=parser.get("Store", "CompanyName", fallback=defaults.company_name),
            company_address=parser.get("Store", "CompanyAddress", fallback=defaults.company_address),
            company_phone=parser.get("Store", "CompanyPhone", fallback=defaults.company_phone),
            invoicing_enabled=parser.getboolean("Invoicing", "Enabled", fallback=defaults.invoicing_enabled),
            invoicing_timeout=parser.getfloat("Invoicing", "TimeoutSeconds", fallback=defaults.invoicing_timeout),
        )
    except InvalidOperation as exc:
        raise ValueError(f"Invalid TaxRate in configuration: {exc}") from exc

    return ConfigSettings(data_file=data_file_path, schema_version=schema_version, settings=settings)


def render_config(
    data_file: str,
    *,
    settings: Optional[Settings] = None,
    schema_version: str = EXPECTED_SCHEMA_VERSION,
) -> str:
    """Produce ``config.ini`` text for ``settings``."""

    settings = settings or Settings()
    parser = configparser.ConfigParser()
    parser["System"] = {"DataFile": data_file, "SchemaVersion": schema_version}
    parser["Store"] = {
        "CompanyName": settings.company_name,
        "CompanyAddress": settings.company_address,
        "CompanyPhone": settings.company_phone,
        "Currency": settings.currency,
    }
    parser["Sales"] = {
        "TaxRate": str(settings.tax_rate),
    }
    parser["Invoicing"] = {
        "Enabled": "true" if settings.invoicing_enabled else "false",
        "TimeoutSeconds": str(settings.invoicing_timeout),
    }
    buffer = io.StringIO()
    parser.write(buffer)
    return buffer.getvalue()


# ---------------------------------------------------------------------------
# Record serialization
# ---------------------------------------------------------------------------


def _dec(value: Decimal) -> str:
    return str(value)


def _parse_dec(raw: Any) -> Decimal:
    return Decimal(str(raw))


def _dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_dt(raw: Optional[str]) -> Optional[datetime]:
    if raw is None:
        return None
    parsed = datetime.fromisoformat(raw)
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def _accumulators(values: Mapping[PaymentMethod, Decimal]) -> Dict[str, str]:
    return {PaymentMethod(method).value: _dec(amount) for method, amount in values.items()}


def _parse_accumulators(raw: Mapping[str, Any]) -> Dict[PaymentMethod, Decimal]:
    return {PaymentMethod(method): _parse_dec(amount) for method, amount in raw.items()}


def serialize_product(record: Product) -> Dict[str, Any]:
    return {
        "id": record.product_id,
        "code": record.code,
        "name": record.name,
        "price": _dec(record.price),
        "cost": _dec(record.cost),
        "stock": _dec(record.stock),
        "unit": record.unit,
        "category": record.category,
        "provider_id": record.provider_id,
        "min_stock": _dec(record.min_stock),
    }


def deserialize_product(raw: Mapping[str, Any]) -> Product:
    return Product(
        product_id=str(raw["id"]),
        code=str(raw.get("code") or ""),
        name=str(raw["name"]),
        price=_parse_dec(raw["price"]),
        cost=_parse_dec(raw.get("cost", "0")),
        stock=_parse_dec(raw.get("stock", "0")),
        unit=str(raw.get("unit") or "unit"),
        category=str(raw.get("category") or ""),
        provider_id=raw.get("provider_id"),
        min_stock=_parse_dec(raw.get("min_stock", "0")),
    )


def serialize_customer(record: Customer) -> Dict[str, Any]:
    return {
        "id": record.customer_id,
        "name": record.name,
        "phone": record.phone,
        "email": record.email,
        "address": record.address,
        "tax_id": record.tax_id,
        "balance": _dec(record.balance),
        "credit_limit": _dec(record.credit_limit),
    }


def deserialize_customer(raw: Mapping[str, Any]) -> Customer:
    return Customer(
        customer_id=str(raw["id"]),
        name=str(raw["name"]),
        phone=str(raw.get("phone") or ""),
        email=str(raw.get("email") or ""),
        address=str(raw.get("address") or ""),
        tax_id=str(raw.get("tax_id") or ""),
        balance=_parse_dec(raw.get("balance", "0")),
        credit_limit=_parse_dec(raw.get("credit_limit", "0")),
    )


def serialize_provider(record: Provider) -> Dict[str, Any]:
    return {
        "id": record.provider_id,
        "name": record.name,
        "contact_person": record.contact_person,
        "phone": record.phone,
        "email": record.email,
    }


def deserialize_provider(raw: Mapping[str, Any]) -> Provider:
    return Provider(
        provider_id=str(raw["id"]),
        name=str(raw["name"]),
        contact_person=str(raw.get("contact_person") or ""),
        phone=str(raw.get("phone") or ""),
        email=str(raw.get("email") or ""),
    )


def serialize_line_item(record: LineItem) -> Dict[str, Any]:
    return {
        "line_id": record.line_id,
        "product_id": record.product_id,
        "product_name": record.product_name,
        "quantity": _dec(record.quantity),
        "unit_price": _dec(record.unit_price),
        "unit_cost": _dec(record.unit_cost),
        "item_discount": _dec(record.item_discount),
        "note": record.note,
        "unit": record.unit,
    }


def deserialize_line_item(raw: Mapping[str, Any]) -> LineItem:
    return LineItem(
        line_id=int(raw["line_id"]),
        product_id=str(raw["product_id"]),
        product_name=str(raw.get("product_name") or ""),
        quantity=_parse_dec(raw["quantity"]),
        unit_price=_parse_dec(raw["unit_price"]),
        unit_cost=_parse_dec(raw.get("unit_cost", "0")),
        item_discount=_parse_dec(raw.get("item_discount", "0")),
        note=str(raw.get("note") or ""),
        unit=str(raw.get("unit") or "unit"),
    )


def serialize_document(record: FiscalDocument) -> Dict[str, Any]:
    return {
        "number": record.number,
        "cae": record.cae,
        "cae_expiry": record.cae_expiry,
        "pdf_url": record.pdf_url,
        "document_id": record.document_id,
        "training": record.training,
    }


def deserialize_document(raw: Mapping[str, Any]) -> FiscalDocument:
    return FiscalDocument(
        number=str(raw["number"]),
        cae=raw.get("cae"),
        cae_expiry=raw.get("cae_expiry"),
        pdf_url=raw.get("pdf_url"),
        document_id=raw.get("document_id"),
        training=bool(raw.get("training", False)),
    )


def serialize_sale(record: Sale) -> Dict[str, Any]:
    return {
        "id": record.sale_id,
        "timestamp": _dt(record.timestamp),
        "type": record.sale_type.value,
        "items": [serialize_line_item(item) for item in record.items],
        "subtotal": _dec(record.subtotal),
        "item_discounts": _dec(record.item_discounts),
        "discount": _dec(record.discount),
        "tax_amount": _dec(record.tax_amount),
        "total": _dec(record.total),
        "profit": _dec(record.profit),
        "payment": {
            "method": record.payment.method.value,
            "amount_paid": _dec(record.payment.amount_paid),
            "change": _dec(record.payment.change),
        },
        "document": serialize_document(record.document),
        "customer": serialize_customer(record.customer) if record.customer else None,
        "notes": record.notes,
        "source_quote_id": record.source_quote_id,
    }


def deserialize_sale(raw: Mapping[str, Any]) -> Sale:
    payment = raw["payment"]
    customer = raw.get("customer")
    return Sale(
        sale_id=str(raw["id"]),
        timestamp=_parse_dt(raw["timestamp"]),
        sale_type=SaleType(raw["type"]),
        items=tuple(deserialize_line_item(item) for item in raw["items"]),
        subtotal=_parse_dec(raw["subtotal"]),
        item_discounts=_parse_dec(raw["item_discounts"]),
        discount=_parse_dec(raw["discount"]),
        tax_amount=_parse_dec(raw["tax_amount"]),
        total=_parse_dec(raw["total"]),
        profit=_parse_dec(raw["profit"]),
        payment=Payment(
            method=PaymentMethod(payment["method"]),
            amount_paid=_parse_dec(payment["amount_paid"]),
            change=_parse_dec(payment["change"]),
        ),
        document=deserialize_document(raw["document"]),
        customer=deserialize_customer(customer) if customer else None,
        notes=str(raw.get("notes") or ""),
        source_quote_id=raw.get("source_quote_id"),
    )


def serialize_document_record(record: DocumentRecord) -> Dict[str, Any]:
    return {
        "sale_id": record.sale_id,
        "sale_type": record.sale_type.value,
        "number": record.number,
        "issued_at": _dt(record.issued_at),
        "cae": record.cae,
        "cae_expiry": record.cae_expiry,
        "pdf_url": record.pdf_url,
        "document_id": record.document_id,
        "training": record.training,
    }


def deserialize_document_record(raw: Mapping[str, Any]) -> DocumentRecord:
    return DocumentRecord(
        sale_id=str(raw["sale_id"]),
        sale_type=SaleType(raw["sale_type"]),
        number=str(raw["number"]),
        issued_at=_parse_dt(raw["issued_at"]),
        cae=raw.get("cae"),
        cae_expiry=raw.get("cae_expiry"),
        pdf_url=raw.get("pdf_url"),
        document_id=raw.get("document_id"),
        training=bool(raw.get("training", False)),
    )


def serialize_movement(record: CashMovement) -> Dict[str, Any]:
    return {
        "id": record.movement_id,
        "kind": record.kind.value,
        "concept": record.concept,
        "amount": _dec(record.amount),
        "timestamp": _dt(record.timestamp),
        "sale_id": record.sale_id,
    }


def deserialize_movement(raw: Mapping[str, Any]) -> CashMovement:
    return CashMovement(
        movement_id=str(raw["id"]),
        kind=MovementKind(raw["kind"]),
        concept=str(raw.get("concept") or ""),
        amount=_parse_dec(raw["amount"]),
        timestamp=_parse_dt(raw["timestamp"]),
        sale_id=raw.get("sale_id"),
    )


def serialize_register(record: CashRegister) -> Dict[str, Any]:
    return {
        "is_open": record.is_open,
        "opened_at": _dt(record.opened_at),
        "opening_amount": _dec(record.opening_amount),
        "current_amount": _dec(record.current_amount),
        "sales_by_method": _accumulators(record.sales_by_method),
        "cash_from_mixed": _dec(record.cash_from_mixed),
        "movements": [serialize_movement(movement) for movement in record.movements],
    }


def deserialize_register(raw: Mapping[str, Any]) -> CashRegister:
    return CashRegister(
        is_open=bool(raw.get("is_open", False)),
        opened_at=_parse_dt(raw.get("opened_at")),
        opening_amount=_parse_dec(raw.get("opening_amount", "0")),
        current_amount=_parse_dec(raw.get("current_amount", "0")),
        sales_by_method=_parse_accumulators(raw.get("sales_by_method", {})),
        cash_from_mixed=_parse_dec(raw.get("cash_from_mixed", "0")),
        movements=tuple(deserialize_movement(movement) for movement in raw.get("movements", [])),
    )


def serialize_closure(record: CashClosure) -> Dict[str, Any]:
    turn = record.turn
    return {
        "opened_at": _dt(record.opened_at),
        "closed_at": _dt(record.closed_at),
        "opening_amount": _dec(record.opening_amount),
        "sales_by_method": _accumulators(record.sales_by_method),
        "cash_from_mixed": _dec(record.cash_from_mixed),
        "current_amount": _dec(record.current_amount),
        "manual_net": _dec(record.manual_net),
        "expected_amount": _dec(record.expected_amount),
        "difference": _dec(record.difference),
        "movements": [serialize_movement(movement) for movement in record.movements],
        "turn": {
            "sale_count": turn.sale_count,
            "subtotal": _dec(turn.subtotal),
            "item_discounts": _dec(turn.item_discounts),
            "discounts": _dec(turn.discounts),
            "tax_amount": _dec(turn.tax_amount),
            "total": _dec(turn.total),
            "profit": _dec(turn.profit),
            "by_method": _accumulators(turn.by_method),
        },
    }


def deserialize_closure(raw: Mapping[str, Any]) -> CashClosure:
    turn = raw["turn"]
    return CashClosure(
        opened_at=_parse_dt(raw["opened_at"]),
        closed_at=_parse_dt(raw["closed_at"]),
        opening_amount=_parse_dec(raw["opening_amount"]),
        sales_by_method=_parse_accumulators(raw["sales_by_method"]),
        cash_from_mixed=_parse_dec(raw["cash_from_mixed"]),
        current_amount=_parse_dec(raw["current_amount"]),
        manual_net=_parse_dec(raw["manual_net"]),
        expected_amount=_parse_dec(raw["expected_amount"]),
        difference=_parse_dec(raw["difference"]),
        movements=tuple(deserialize_movement(movement) for movement in raw["movements"]),
        turn=TurnSummary(
            sale_count=int(turn["sale_count"]),
            subtotal=_parse_dec(turn["subtotal"]),
            item_discounts=_parse_dec(turn["item_discounts"]),
            discounts=_parse_dec(turn["discounts"]),
            tax_amount=_parse_dec(turn["tax_amount"]),
            total=_parse_dec(turn["total"]),
            profit=_parse_dec(turn["profit"]),
            by_method=_parse_accumulators(turn["by_method"]),
        ),
    )


def serialize_state(state: LedgerState) -> Dict[str, Any]:
    """Project everything but the live checkout into JSON-ready values."""

    return {
        "products": [serialize_product(record) for record in state.products],
        "customers": [serialize_customer(record) for record in state.customers],
        "providers": [serialize_provider(record) for record in state.providers],
        "provider_restock": {
            provider_id: {product_id: _dec(quantity) for product_id, quantity in bucket.items()}
            for provider_id, bucket in state.provider_restock.items()
        },
        "sales": [serialize_sale(record) for record in state.sales],
        "documents": [serialize_document_record(record) for record in state.documents],
        "cash_register": serialize_register(state.cash_register),
        "cash_closures": [serialize_closure(record) for record in state.cash_closures],
    }


def deserialize_state(raw: Mapping[str, Any], settings: Settings) -> LedgerState:
    """Rebuild a ledger state from :func:`serialize_state` output.

    Empty catalogs (products, customers, providers) are replaced by the seed
    data so a fresh installation always has something to sell.

    Raises:
        KeyError, ValueError, TypeError: When ``raw`` is malformed.
    """

    seed = seed_state(settings)
    products = tuple(deserialize_product(item) for item in raw.get("products") or [])
    customers = tuple(deserialize_customer(item) for item in raw.get("customers") or [])
    providers = tuple(deserialize_provider(item) for item in raw.get("providers") or [])
    register_raw = raw.get("cash_register")
    return LedgerState(
        settings=settings,
        products=products or seed.products,
        customers=customers or seed.customers,
        providers=providers or seed.providers,
        provider_restock={
            str(provider_id): {str(product_id): _parse_dec(quantity) for product_id, quantity in bucket.items()}
            for provider_id, bucket in (raw.get("provider_restock") or {}).items()
        },
        sales=tuple(deserialize_sale(item) for item in raw.get("sales") or []),
        documents=tuple(deserialize_document_record(item) for item in raw.get("documents") or []),
        cash_register=deserialize_register(register_raw) if register_raw else CashRegister(),
        cash_closures=tuple(deserialize_closure(item) for item in raw.get("cash_closures") or []),
    )


# ---------------------------------------------------------------------------
# Seed data
# ---------------------------------------------------------------------------


def seed_providers() -> Tuple[Provider, ...]:
    return (
        Provider("prov1", "Ferreteria Central", "Carlos Ruiz", "11-4567-8901", "compras@central.com"),
        Provider("prov2", "Pinturas SA", "Ana Gomez", "11-2345-6789", "ventas@pinturassa.com"),
        Provider("prov3", "Electrica Norte", "Pedro Martin", "11-3456-7890", "pedidos@electricanorte.com"),
    )


def seed_products() -> Tuple[Product, ...]:
    return (
        Product("1", "Tornillo Phillips 3x20mm", Decimal("15.50"), Decimal("8.00"), Decimal("500"),
                code="7891234567890", category="Tornilleria", provider_id="prov1", min_stock=Decimal("50")),
        Product("2", "Pintura Latex Blanco 4L", Decimal("2850.00"), Decimal("1900.00"), Decimal("25"),
                code="7891234567891", category="Pinturas", provider_id="prov2", min_stock=Decimal("5")),
        Product("3", "Cable Unipolar 2.5mm", Decimal("180.00"), Decimal("120.00"), Decimal("1000"),
                code="7891234567892", unit="meter", category="Electricidad", provider_id="prov3",
                min_stock=Decimal("100")),
        Product("4", "Martillo 500g", Decimal("1250.00"), Decimal("800.00"), Decimal("15"),
                code="7891234567893", category="Herramientas", provider_id="prov1", min_stock=Decimal("3")),
        Product("5", "Cemento Portland 50kg", Decimal("950.00"), Decimal("650.00"), Decimal("80"),
                code="7891234567894", unit="kg", category="Construccion", provider_id="prov1",
                min_stock=Decimal("20")),
    )


def seed_customers() -> Tuple[Customer, ...]:
    return (
        Customer("1", "Juan Perez", phone="+541198765432", email="juan@email.com",
                 address="Calle Falsa 123", credit_limit=Decimal("50000")),
        Customer("2", "Maria Garcia", phone="+541155551234", email="maria@email.com",
                 address="Av. Libertador 456", balance=Decimal("-1500"), credit_limit=Decimal("30000")),
    )


def seed_state(settings: Optional[Settings] = None) -> LedgerState:
    return LedgerState(
        settings=settings or Settings(),
        products=seed_products(),
        customers=seed_customers(),
        providers=seed_providers(),
    )


# ---------------------------------------------------------------------------
# Workbook helpers
# ---------------------------------------------------------------------------


def open_workbook(data_file: Path) -> Workbook:
    """Open the state workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")
    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Write ``workbook`` next to ``destination`` and swap it into place."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    scratch = dest.with_name(f".{dest.name}.tmp")
    workbook.save(scratch)
    os.replace(scratch, dest)


def _chunks(text: str, size: Optional[int] = None) -> Iterable[str]:
    size = size or CELL_CHUNK_SIZE
    if not text:
        yield ""
        return
    for start in range(0, len(text), size):
        yield text[start:start + size]


def build_state_workbook(state: LedgerState, *, schema_version: str = EXPECTED_SCHEMA_VERSION) -> Workbook:
    """Render ``state`` into a fresh workbook with ``Meta`` and ``LedgerState`` sheets."""

    workbook = openpyxl.Workbook()
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold = Font(bold=True)
    meta = workbook.create_sheet(title=META_SHEET)
    meta.append(["Key", "Value"])
    meta.append(["SchemaVersion", schema_version])
    meta.append(["SavedAt", datetime.now(UTC).isoformat()])

    sheet = workbook.create_sheet(title=STATE_SHEET)
    sheet.append(["Key", "Part", "Value"])
    payload = serialize_state(state)
    for key in STATE_KEYS:
        text = json.dumps(payload[key], separators=(",", ":"))
        for part, chunk in enumerate(_chunks(text)):
            sheet.append([key, part, chunk])

    for worksheet in (meta, sheet):
        for cell in worksheet[1]:
            cell.font = bold
    return workbook


def read_schema_version(workbook: Workbook) -> Optional[str]:
    if META_SHEET not in workbook.sheetnames:
        return None
    for row in workbook[META_SHEET].iter_rows(min_row=2, values_only=True):
        if not row or row[0] != "SchemaVersion":
            continue
        value = row[1] if len(row) > 1 else None
        return None if value is None else str(value)
    return None


def read_state_values(workbook: Workbook) -> Dict[str, Any]:
    """Reassemble and decode the JSON values of the ``LedgerState`` sheet.

    Raises:
        KeyError: If the sheet is missing.
        ValueError: If a value is not valid JSON.
    """

    sheet = workbook[STATE_SHEET]
    parts: Dict[str, List[Tuple[int, str]]] = {}
    for row in sheet.iter_rows(min_row=2, values_only=True):
        if not any(cell is not None for cell in row):
            continue
        key, part, value = row[:3]
        parts.setdefault(str(key), []).append((int(part), "" if value is None else str(value)))
    return {
        key: json.loads("".join(chunk for _, chunk in sorted(chunks)))
        for key, chunks in parts.items()
    }


class WorkbookStateStore:
    """Persist and rehydrate the ledger state in an ``openpyxl`` workbook."""

    def __init__(self, data_file: Path, *, schema_version: str = EXPECTED_SCHEMA_VERSION) -> None:
        self.data_file = Path(data_file).expanduser()
        self.schema_version = schema_version

    def load(self, settings: Settings) -> LedgerState:
        """Return the stored state, or seed data when it cannot be read.

        Raises:
            RuntimeError: If the workbook was written by another schema
                version. Reseeding would silently drop its history.
        """

        if not self.data_file.exists():
            log.info("No stored state at '%s'; starting from seed data", self.data_file)
            return seed_state(settings)

        try:
            workbook = open_workbook(self.data_file)
        except (OSError, zipfile.BadZipFile, InvalidFileException, KeyError, ValueError) as exc:
            log.warning("Stored state at '%s' is unreadable (%s); starting from seed data", self.data_file, exc)
            return seed_state(settings)

        stored_version = read_schema_version(workbook)
        if stored_version is not None and stored_version != self.schema_version:
            log.error(
                "State schema mismatch: expected %s, found %s",
                self.schema_version,
                stored_version,
            )
            raise RuntimeError(
                f"State schema mismatch: expected {self.schema_version}, found {stored_version}"
            )

        try:
            values = read_state_values(workbook)
            state = deserialize_state(values, settings)
        except (KeyError, ValueError, TypeError, AttributeError, ArithmeticError) as exc:
            log.warning("Stored state at '%s' is corrupt (%s); starting from seed data", self.data_file, exc)
            return seed_state(settings)

        log.info(
            "Loaded state from '%s' (%d products, %d sales, %d closures)",
            self.data_file,
            len(state.products),
            len(state.sales),
            len(state.cash_closures),
        )
        return state

    def save(self, state: LedgerState) -> None:
        workbook = build_state_workbook(state, schema_version=self.schema_version)
        save_workbook(workbook, self.data_file)
        log.debug("Persisted state to '%s'", self.data_file)

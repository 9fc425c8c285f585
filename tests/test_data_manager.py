"""Unit tests documenting the expected behavior of the data access layer."""

from __future__ import annotations

import configparser
import json
from decimal import Decimal
from pathlib import Path
from unittest.mock import Mock

import openpyxl
from openpyxl.workbook import Workbook as OpenpyxlWorkbook
import pytest

from cashdesk import cash_session, constants, data_manager, ledger
from cashdesk.models import (
    CashRegister,
    Customer,
    FiscalDocument,
    LedgerState,
    LineItem,
    Payment,
    Sale,
    Settings,
)

from conftest import CLOSED_AT, OPENED_AT, SOLD_AT


def _committed_state(ledger_state: LedgerState) -> LedgerState:
    """A state with one credit sale, a closed session and a pending restock."""

    sale = Sale(
        sale_id="S20250301113000000000",
        timestamp=SOLD_AT,
        sale_type=constants.SaleType.CREDIT,
        items=(LineItem(1, "P2", "Cable 2.5mm", Decimal("2.5"), Decimal("10.00"), Decimal("6.00"), unit="meter"),),
        subtotal=Decimal("25.00"),
        item_discounts=Decimal("0"),
        discount=Decimal("0"),
        tax_amount=Decimal("0.00"),
        total=Decimal("25.00"),
        profit=Decimal("10.00"),
        payment=Payment(constants.PaymentMethod.CASH, Decimal("5.00")),
        document=FiscalDocument(number="NC-1", cae="7001", cae_expiry="2025-03-11"),
        customer=Customer("C1", "Ana", credit_limit=Decimal("1000")),
        notes="pick up tomorrow",
    )
    state = ledger.apply_all(
        ledger_state,
        [
            ledger.OpenCashRegister(Decimal("100"), timestamp=OPENED_AT),
            ledger.SaveSale(sale),
            ledger.AddCashMovement(constants.MovementKind.EXPENSE, Decimal("3.50"), "Tape", timestamp=SOLD_AT),
            ledger.CloseCashRegister(timestamp=CLOSED_AT),
            ledger.OpenCashRegister(Decimal("80"), timestamp=CLOSED_AT),
        ],
    )
    return state


def _stored_fields(state: LedgerState) -> dict:
    return {key: getattr(state, key) for key in data_manager.STATE_KEYS}


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def test_find_config_file_respects_explicit_path(config_file: Path):
    """Supplying an explicit path should be treated as the winning answer."""

    result = data_manager.find_config_file(config_file)
    assert result == config_file


def test_find_config_file_discovers_in_parent(tmp_path, monkeypatch):
    """Auto-discovery should walk up from the working directory."""

    config_file = tmp_path / "config.ini"
    config_file.write_text("[System]\nDataFile=state.xlsx")
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    result = data_manager.find_config_file()
    assert result == config_file


def test_read_config_loads_sections(config_file: Path):
    """read_config should return a populated ConfigParser."""

    parser = data_manager.read_config(config_file)
    assert parser.get("Store", "CompanyName") == "Test Hardware"
    assert parser.get("Sales", "TaxRate") == "0.21"


def test_read_config_missing_file_raises(tmp_path):
    """Missing files should propagate a FileNotFoundError."""

    with pytest.raises(FileNotFoundError):
        data_manager.read_config(tmp_path / "not_there.ini")


def test_parse_settings_resolves_relative_paths(config_factory):
    """Relative DataFile entries should be anchored to the config location."""

    bundle = config_factory(make_relative=True)
    parser = data_manager.read_config(bundle.config_path)

    config = data_manager.parse_settings(parser, base_path=bundle.config_path.parent)

    assert config.data_file == (bundle.config_path.parent / bundle.workbook_path.name).resolve()
    assert config.schema_version == constants.EXPECTED_SCHEMA_VERSION
    assert config.settings.tax_rate == Decimal("0.21")
    assert config.settings.company_name == "Test Hardware"
    assert config.settings.invoicing_enabled is False
    assert config.settings.invoicing_timeout == 5.0


def test_parse_settings_requires_system_section(tmp_path):
    """Missing keys should result in a descriptive KeyError."""

    parser = configparser.ConfigParser()
    parser.read_string("[Other]\nvalue=1")
    with pytest.raises(KeyError):
        data_manager.parse_settings(parser, base_path=tmp_path)


def test_parse_settings_defaults_optional_sections(tmp_path):
    """Store, sales and invoicing entries fall back to the built-in defaults."""

    parser = configparser.ConfigParser()
    parser.read_string("[System]\nDataFile = state.xlsx\nSchemaVersion = 1.0.0\n")

    config = data_manager.parse_settings(parser, base_path=tmp_path)

    assert config.settings == Settings()


@pytest.mark.parametrize("rate", ["abc", "1.5"])
def test_parse_settings_rejects_bad_tax_rate(tmp_path, rate):
    """Unparseable or out-of-range tax rates surface as ValueError."""

    parser = configparser.ConfigParser()
    parser.read_string(f"[System]\nDataFile = s.xlsx\nSchemaVersion = 1.0.0\n[Sales]\nTaxRate = {rate}\n")

    with pytest.raises(ValueError):
        data_manager.parse_settings(parser, base_path=tmp_path)


def test_render_config_is_parseable(tmp_path):
    """Generated configuration text parses back into the same settings."""

    settings = Settings(tax_rate=Decimal("0.105"), company_name="Shop", invoicing_enabled=True)
    parser = configparser.ConfigParser()
    parser.read_string(data_manager.render_config("state.xlsx", settings=settings))

    config = data_manager.parse_settings(parser, base_path=tmp_path)

    assert config.settings == settings
    assert config.data_file == (tmp_path / "state.xlsx").resolve()


def test_render_config_sales_section_only_holds_tax_rate():
    """The sales section carries the tax rate and nothing the engine ignores."""

    parser = configparser.ConfigParser()
    parser.read_string(data_manager.render_config("state.xlsx"))

    assert dict(parser["Sales"]) == {"taxrate": "0.21"}


# ---------------------------------------------------------------------------
# Workbook helpers
# ---------------------------------------------------------------------------


def test_open_workbook_returns_openpyxl_instance(workbook_factory):
    """open_workbook should hand back a loaded Workbook object."""

    workbook = data_manager.open_workbook(workbook_factory())
    assert isinstance(workbook, OpenpyxlWorkbook)
    assert data_manager.read_schema_version(workbook) == constants.EXPECTED_SCHEMA_VERSION


def test_open_workbook_missing_file_raises(tmp_path):
    """Missing workbook files should yield FileNotFoundError."""

    with pytest.raises(FileNotFoundError):
        data_manager.open_workbook(tmp_path / "missing.xlsx")


def test_state_workbook_layout(ledger_state):
    """The state workbook holds a Meta sheet and a key/value LedgerState sheet."""

    workbook = data_manager.build_state_workbook(ledger_state)

    assert workbook.sheetnames == [constants.SheetName.META.value, constants.SheetName.LEDGER_STATE.value]
    keys = [row[0] for row in workbook[data_manager.STATE_SHEET].iter_rows(min_row=2, values_only=True)]
    assert keys == list(data_manager.STATE_KEYS)
    products = data_manager.read_state_values(workbook)["products"]
    assert products[0]["price"] == "50.00"


# ---------------------------------------------------------------------------
# State store
# ---------------------------------------------------------------------------


def test_store_round_trips_ledger_state(tmp_path, ledger_state):
    """Everything but the live checkout survives a save and load."""

    state = _committed_state(ledger_state)
    store = data_manager.WorkbookStateStore(tmp_path / "state.xlsx")

    store.save(state)
    loaded = store.load(state.settings)

    assert _stored_fields(loaded) == _stored_fields(state)
    closure = loaded.cash_closures[0]
    assert cash_session.recompute_expected(closure) == closure.expected_amount
    assert loaded.cash_register.is_open is True


def test_store_does_not_persist_checkout(tmp_path, ledger_state):
    """The cart and payment selections are session-only."""

    state = ledger.apply_all(ledger_state, [ledger.AddToCart("P1"), ledger.SetPaymentAmount(Decimal("9"))])
    store = data_manager.WorkbookStateStore(tmp_path / "state.xlsx")

    store.save(state)
    loaded = store.load(state.settings)

    assert loaded.cart == ()
    assert loaded.payment_amount == Decimal("0")


def test_store_splits_long_values_across_rows(tmp_path, ledger_state, monkeypatch):
    """Values longer than a cell are chunked and reassembled."""

    monkeypatch.setattr(data_manager, "CELL_CHUNK_SIZE", 40)
    store = data_manager.WorkbookStateStore(tmp_path / "state.xlsx")

    store.save(ledger_state)
    loaded = store.load(ledger_state.settings)

    workbook = openpyxl.load_workbook(tmp_path / "state.xlsx")
    product_rows = [
        row for row in workbook[data_manager.STATE_SHEET].iter_rows(min_row=2, values_only=True)
        if row[0] == "products"
    ]
    assert len(product_rows) > 1
    assert loaded.products == ledger_state.products


def test_store_seeds_when_workbook_missing(tmp_path):
    """A first start without a workbook uses the seed catalog."""

    store = data_manager.WorkbookStateStore(tmp_path / "missing.xlsx")

    state = store.load(Settings())

    assert [product.product_id for product in state.products] == ["1", "2", "3", "4", "5"]
    assert state.sales == ()


def test_store_seeds_when_workbook_is_not_a_workbook(tmp_path):
    """A file openpyxl cannot read fails soft to seed data."""

    path = tmp_path / "state.xlsx"
    path.write_bytes(b"definitely not a zip archive")

    state = data_manager.WorkbookStateStore(path).load(Settings())

    assert len(state.customers) == 2


def test_store_seeds_when_json_is_corrupt(tmp_path, ledger_state):
    """Corrupt stored values fail soft to seed data."""

    path = tmp_path / "state.xlsx"
    workbook = data_manager.build_state_workbook(ledger_state)
    workbook[data_manager.STATE_SHEET]["C2"] = "{not json"
    workbook.save(path)

    state = data_manager.WorkbookStateStore(path).load(ledger_state.settings)

    assert state.products == data_manager.seed_products()


def test_store_rejects_other_schema_versions(tmp_path, ledger_state):
    """Data written by another schema version is never silently replaced."""

    path = tmp_path / "state.xlsx"
    data_manager.WorkbookStateStore(path, schema_version="0.9.0").save(ledger_state)

    with pytest.raises(RuntimeError):
        data_manager.WorkbookStateStore(path).load(ledger_state.settings)


def test_store_load_opens_through_open_workbook(tmp_path, ledger_state, monkeypatch):
    """Loading goes through the shared workbook opener."""

    path = tmp_path / "state.xlsx"
    data_manager.WorkbookStateStore(path).save(ledger_state)
    opener = Mock(wraps=data_manager.open_workbook)
    monkeypatch.setattr(data_manager, "open_workbook", opener)

    data_manager.WorkbookStateStore(path).load(ledger_state.settings)

    opener.assert_called_once_with(path)


def test_store_seeds_when_meta_sheet_is_malformed(tmp_path):
    """A Meta sheet without a value column fails soft instead of aborting startup."""

    path = tmp_path / "state.xlsx"
    workbook = openpyxl.Workbook()
    workbook.active.title = data_manager.META_SHEET
    workbook.active.append(["Key"])
    workbook.active.append(["SchemaVersion"])
    workbook.save(path)

    state = data_manager.WorkbookStateStore(path).load(Settings())

    assert state.products == data_manager.seed_products()


def test_store_reads_state_behind_short_meta_rows(tmp_path, ledger_state):
    """Short Meta rows carry no version, so the stored values still load."""

    path = tmp_path / "state.xlsx"
    workbook = data_manager.build_state_workbook(ledger_state)
    workbook.remove(workbook[data_manager.META_SHEET])
    meta = workbook.create_sheet(title=data_manager.META_SHEET, index=0)
    meta.append(["Key"])
    meta.append(["SchemaVersion"])
    workbook.save(path)

    assert data_manager.read_schema_version(openpyxl.load_workbook(path)) is None
    state = data_manager.WorkbookStateStore(path).load(ledger_state.settings)
    assert state.products == ledger_state.products


# ---------------------------------------------------------------------------
# Seed data and deserialization
# ---------------------------------------------------------------------------


def test_seed_state_contents():
    """Seed data ships a small hardware-store catalog."""

    state = data_manager.seed_state()

    assert len(state.products) == 5
    assert [provider.provider_id for provider in state.providers] == ["prov1", "prov2", "prov3"]
    maria = next(customer for customer in state.customers if customer.customer_id == "2")
    assert maria.balance == Decimal("-1500")
    cable = next(product for product in state.products if product.product_id == "3")
    assert not cable.whole_units_only
    assert state.cash_register == CashRegister()


def test_deserialize_state_fills_empty_catalogs():
    """Empty catalogs are replaced by the seed data; history is kept."""

    raw = {"products": [], "customers": [], "providers": [], "sales": [], "cash_closures": []}

    state = data_manager.deserialize_state(raw, Settings())

    assert state.products == data_manager.seed_products()
    assert state.customers == data_manager.seed_customers()


def test_serialized_state_is_json_compatible(ledger_state):
    """Every stored value is plain JSON."""

    state = _committed_state(ledger_state)

    payload = data_manager.serialize_state(state)

    decoded = json.loads(json.dumps(payload))
    assert decoded["sales"][0]["payment"]["method"] == "cash"
    assert decoded["cash_register"]["sales_by_method"]["account"] == "0"
    rebuilt = data_manager.deserialize_state(decoded, state.settings)
    assert rebuilt.sales == state.sales
    assert rebuilt.documents == state.documents

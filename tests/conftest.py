"""Shared pytest fixtures and utilities for cashdesk tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from types import ModuleType
from typing import Callable, Iterator

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from cashdesk import cli, constants, core_logic, ledger, sale_builder  # noqa: E402
from cashdesk.models import Customer, LedgerState, Product, Provider, Settings  # noqa: E402
from cashdesk.setup_workbook import create_state_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Store]\n"
    "CompanyName = {company_name}\n"
    "Currency = ARS\n\n"
    "[Sales]\n"
    "TaxRate = {tax_rate}\n\n"
    "[Invoicing]\n"
    "Enabled = {invoicing}\n"
    "TimeoutSeconds = 5\n"
)

OPENED_AT = datetime(2025, 3, 1, 9, 0, tzinfo=UTC)
SOLD_AT = datetime(2025, 3, 1, 11, 30, tzinfo=UTC)
CLOSED_AT = datetime(2025, 3, 1, 20, 0, tzinfo=UTC)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    company_name: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return the repository root path."""

    return PROJECT_ROOT


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates a seeded state workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        filename: str = "cashdesk_state.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_state_workbook(workbook_path, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        company_name: str = "Test Hardware",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        tax_rate: str = "0.21",
        invoicing: bool = False,
        with_workbook: bool = True,
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        if with_workbook:
            workbook_path = workbook_factory(subdir=f"bundle_{bundle_id}")
        else:
            workbook_path = bundle_dir / "cashdesk_state.xlsx"
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                schema_version=schema_version,
                company_name=company_name,
                tax_rate=tax_rate,
                invoicing="true" if invoicing else "false",
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            company_name=company_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="cashdesk-cli", description="cashdesk CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]


# ---------------------------------------------------------------------------
# Ledger fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    """Store settings with the default 21% tax and invoicing disabled."""

    return Settings()


@pytest.fixture
def untaxed_settings() -> Settings:
    """Settings without tax so scenario totals stay round."""

    return Settings(tax_rate=Decimal("0"))


@pytest.fixture
def hammer() -> Product:
    return Product(
        product_id="P1",
        name="Hammer",
        price=Decimal("50.00"),
        cost=Decimal("30.00"),
        stock=Decimal("10"),
        code="HAM-1",
        provider_id="prov1",
        min_stock=Decimal("2"),
    )


@pytest.fixture
def cable() -> Product:
    return Product(
        product_id="P2",
        name="Cable 2.5mm",
        price=Decimal("10.00"),
        cost=Decimal("6.00"),
        stock=Decimal("100"),
        code="CAB-25",
        unit="meter",
        provider_id="prov2",
        min_stock=Decimal("20"),
    )


@pytest.fixture
def providers() -> tuple[Provider, ...]:
    return (
        Provider("prov1", "Tools Inc"),
        Provider("prov2", "Wires SA"),
    )


@pytest.fixture
def customers() -> tuple[Customer, ...]:
    return (
        Customer("C1", "Ana", credit_limit=Decimal("1000")),
        Customer("C2", "Bruno", balance=Decimal("-1")),
        Customer("C3", "Carla", balance=Decimal("25")),
    )


@pytest.fixture
def ledger_state(untaxed_settings, hammer, cable, customers, providers) -> LedgerState:
    """A closed-register state holding a small catalog and three customers."""

    return LedgerState(
        settings=untaxed_settings,
        products=(hammer, cable),
        customers=customers,
        providers=providers,
    )


@pytest.fixture
def open_state(ledger_state: LedgerState) -> LedgerState:
    """``ledger_state`` with a register opened at 100.00."""

    return ledger.apply(ledger_state, ledger.OpenCashRegister(Decimal("100.00"), timestamp=OPENED_AT))


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[..., datetime]:
    """Patch ``datetime`` in the given modules to return a predetermined moment."""

    def _apply(moment: datetime, *modules: ModuleType) -> datetime:
        class _FixedDateTime(datetime):
            @classmethod
            def now(cls, tz=None):
                assert tz is UTC
                return moment

        for module in modules or (sale_builder,):
            monkeypatch.setattr(module, "datetime", _FixedDateTime)
        return moment

    return _apply

"""Utility for initializing the cashdesk state workbook.

The module doubles as a script (``cashdesk-setup``) and as a library used by
tests or other tooling. It writes a default ``config.ini`` when none exists and
creates a workbook holding the seed catalog, customers and providers.
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Optional, Sequence

from . import data_manager
from .constants import EXPECTED_SCHEMA_VERSION
from .models import Settings

CONFIG_FILE = data_manager.CONFIG_FILE_NAME
DEFAULT_DATA_FILE = "cashdesk_state.xlsx"


def write_default_config(
    config_path: Path,
    *,
    data_file: str = DEFAULT_DATA_FILE,
    settings: Optional[Settings] = None,
    overwrite: bool = False,
) -> Path:
    """Write a ``config.ini`` with default store settings.

    Raises:
        FileExistsError: If ``config_path`` exists and ``overwrite`` is False.
    """

    config_path = Path(config_path).expanduser().resolve()
    if config_path.exists() and not overwrite:
        raise FileExistsError(f"Refusing to overwrite existing configuration: {config_path}")
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(
        data_manager.render_config(data_file, settings=settings, schema_version=EXPECTED_SCHEMA_VERSION),
        encoding="utf-8",
    )
    return config_path


def create_state_workbook(
    destination: Path,
    *,
    settings: Optional[Settings] = None,
    schema_version: str = EXPECTED_SCHEMA_VERSION,
    overwrite: bool = False,
) -> Path:
    """Create a seeded state workbook at ``destination``.

    When ``overwrite`` is ``False`` (the default) this function raises
    ``FileExistsError`` if the target already exists.
    """

    destination = Path(destination).expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(f"Refusing to overwrite existing state workbook: {destination}")

    workbook = data_manager.build_state_workbook(
        data_manager.seed_state(settings),
        schema_version=schema_version,
    )
    data_manager.save_workbook(workbook, destination)
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    """Create the workbook named by ``config_path``."""

    config_path = Path(config_path).expanduser().resolve()
    parser = data_manager.read_config(config_path)
    config = data_manager.parse_settings(parser, base_path=config_path.parent)
    return create_state_workbook(
        config.data_file,
        settings=config.settings,
        schema_version=config.schema_version,
        overwrite=overwrite,
    )


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(description="Initialize the cashdesk state workbook")
    parser.add_argument(
        "--config",
        default=CONFIG_FILE,
        help="Path to configuration file (default: config.ini). Created when missing.",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the target workbook if it already exists.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the setup script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- cashdesk setup ---")
    if not config_path.exists():
        write_default_config(config_path)
        print(f"Wrote default configuration: {config_path}")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, overwrite=args.force)
    except KeyError as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except (ValueError, OSError) as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\nCreated state workbook at: {output_path}")
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())

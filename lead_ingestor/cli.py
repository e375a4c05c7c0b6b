"""Command line entry point: ``lead-ingestor [--dry-run] [--verbose]``."""

from __future__ import annotations

import argparse
import logging
import signal
from typing import Optional, Sequence

from .errors import ConfigurationError
from .logging_setup import configure_logging
from .pipeline import ExitCode, run
from .settings import load_settings

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lead-ingestor",
        description="Load real-estate lead CSV files from the inbound directory into the database.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Parse, dedupe and resolve campaigns against the database without writing rows or moving files.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging (per-row rejection decisions).",
    )
    return parser


def _raise_system_exit(signum: int, _frame: object) -> None:
    raise SystemExit(128 + signum)


def _install_signal_handlers() -> None:
    # SIGTERM unwinds like an exception so the run lock is released.
    signal.signal(signal.SIGTERM, _raise_system_exit)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    configure_logging("DEBUG" if args.verbose else None)

    try:
        settings = load_settings()
    except ConfigurationError as exc:
        logger.error("%s", exc)
        return int(ExitCode.CONFIGURATION_ERROR)

    if not args.verbose:
        configure_logging(settings.log_level)
    _install_signal_handlers()

    try:
        return int(run(settings, dry_run=args.dry_run))
    except ConfigurationError as exc:
        logger.error("%s", exc)
        return int(ExitCode.CONFIGURATION_ERROR)
    except Exception:  # noqa: BLE001 - report and map to the fatal exit code
        logger.exception("Lead ingestion aborted")
        return int(ExitCode.FATAL)


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    raise SystemExit(main())

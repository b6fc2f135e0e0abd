"""
Dip Signal Alerts - Main Entry Point

Runs one evaluation pass over every configured entity:
- Probability gate on the latest forecast
- RSI / lower Bollinger band flip detection around the forecast timestamp
- Standby heuristic for near-flip setups
- Telegram alerts on state transitions, with standby debounce and heartbeats

Usage:
    python -m src.main                   # one batch (schedule with cron)
    python -m src.main --dry-run         # print snapshots, send nothing, store nothing
    python -m src.main --entity bitcoin  # restrict to some entities

Exit codes:
    0  success
    1  fatal error
    2  signal state store unavailable

Configuration:
    Copy .env.example to .env and configure your settings.
"""

import argparse
import sys
from pathlib import Path
from typing import Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from config.logging_config import get_logger, setup_logging
from config.settings import DataSource, Settings, get_settings
from src.api.http_data_client import HttpDataClient
from src.api.sql_data_source import SqlForecastSource, SqlPriceSource
from src.daemon.evaluator import SignalEvaluator, evaluate_signals
from src.daemon.runner import BatchRunner, RunSummary
from src.notifications.notifier import LogNotifier
from src.notifications.telegram import TelegramNotifier
from src.state.database import Database
from src.state.repository import (
    InMemorySignalStateRepository,
    PersistenceUnavailableError,
    SqlSignalStateRepository,
)
from src.strategy.alert_policy import AlertPolicy
from src.version import __version__

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_PERSISTENCE_UNAVAILABLE = 2


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="python -m src.main",
        description="Evaluate dip signals once and send alerts on state changes.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Evaluate and print snapshots without sending alerts or writing state",
    )
    parser.add_argument(
        "--entity",
        action="append",
        dest="entities",
        metavar="ID",
        help="Entity to evaluate (repeatable; defaults to ENTITIES)",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


def build_sources(settings: Settings, db: Database):
    """Forecast and price sources for the configured data source."""
    if settings.data_source == DataSource.HTTP:
        client = HttpDataClient(
            settings.data_api_url,
            default_timeout=settings.evaluation_timeout_seconds,
        )
        return client, client
    return SqlForecastSource(db), SqlPriceSource(db)


def build_notifier(settings: Settings):
    if not settings.telegram_enabled:
        return LogNotifier()
    return TelegramNotifier(
        bot_token=settings.telegram_bot_token.get_secret_value(),
        chat_ids=settings.telegram_chat_ids,
        enabled=True,
    )


def print_snapshots(snapshots) -> None:
    print("\n" + "=" * 70)
    print(f"  {'entity':<12} {'gate':<6} {'flip':<6} {'and':<6} {'or':<6} state")
    print("=" * 70)
    for snapshot in snapshots:
        row = snapshot.as_dict()
        if row["error"]:
            print(f"  {row['entity_id']:<12} {str(row['gate']):<6} insufficient data: {row['error']}")
            continue
        dips = row["dips"]
        print(
            f"  {row['entity_id']:<12} {str(row['gate']):<6} {str(dips['flip']):<6} "
            f"{str(dips['and']):<6} {str(dips['or']):<6} {row['state']}"
        )
        print(f"  {'':<12} {row['gate_detail']}")
    print("=" * 70 + "\n")


def run(settings: Settings, dry_run: bool = False, entities: Optional[list[str]] = None) -> RunSummary:
    """Wire components from settings and execute one batch."""
    try:
        db = Database(settings.database_path)
    except SQLAlchemyError as e:
        raise PersistenceUnavailableError(str(e)) from e
    forecast_source, price_source = build_sources(settings, db)

    runner_config = settings.to_runner_config()
    if entities:
        runner_config.entities = list(entities)
    if dry_run:
        runner_config.entity_lease_seconds = 0

    signal_config = settings.to_signal_config()

    if dry_run:
        repository = InMemorySignalStateRepository()
        notifier = LogNotifier()
        print_snapshots(
            evaluate_signals(
                runner_config.entities,
                forecast_source,
                price_source,
                signal_config,
                price_lookback_minutes=runner_config.price_lookback_minutes,
            )
        )
    else:
        repository = SqlSignalStateRepository(db)
        notifier = build_notifier(settings)

    evaluator = SignalEvaluator(
        forecast_source=forecast_source,
        price_source=price_source,
        repository=repository,
        notifier=notifier,
        signal_config=signal_config,
        policy=AlertPolicy(settings.to_alert_policy_config()),
        message_config=settings.to_message_config(),
        price_lookback_minutes=runner_config.price_lookback_minutes,
        timeout_seconds=runner_config.evaluation_timeout_seconds,
    )
    runner = BatchRunner(runner_config, evaluator, lease_db=db)

    try:
        return runner.run_once()
    finally:
        if isinstance(notifier, TelegramNotifier):
            notifier.close()


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    Main entry point for one batch.

    Returns:
        Exit code (0 success, 1 fatal error, 2 state store unavailable)
    """
    args = parse_args(argv)

    try:
        # Load settings
        settings = get_settings()

        # Setup logging
        setup_logging(
            log_level=settings.log_level,
            log_file=settings.log_file,
            json_format=settings.log_json,
        )

        logger = get_logger(__name__)
        logger.info(
            "starting_signal_run",
            version=__version__,
            dry_run=args.dry_run,
            data_source=settings.data_source.value,
            dip_mode=settings.dip_mode.value,
        )

        summary = run(settings, dry_run=args.dry_run, entities=args.entities)
        logger.info(
            "signal_run_complete",
            run_id=summary.run_id,
            evaluated=summary.evaluated,
            skipped=summary.skipped,
            failed=summary.failed,
            alerts=summary.alerts_sent,
        )
        return EXIT_OK

    except KeyboardInterrupt:
        print("\n\nInterrupted. Exiting...")
        return EXIT_FATAL

    except PersistenceUnavailableError as e:
        print(f"\nSignal state store unavailable: {e}", file=sys.stderr)
        get_logger(__name__).critical("state_store_unavailable", error=str(e))
        return EXIT_PERSISTENCE_UNAVAILABLE

    except Exception as e:
        print(f"\nFatal error: {e}", file=sys.stderr)
        get_logger(__name__).critical("fatal_run_error", error=str(e), exc_info=True)
        return EXIT_FATAL


if __name__ == "__main__":
    sys.exit(main())

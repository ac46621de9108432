"""Command line entry point for the settlement sync."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from collections.abc import Sequence
from datetime import UTC, datetime

from pydantic import ValidationError
from redis.asyncio import Redis
from sqlalchemy.exc import SQLAlchemyError

from cow_settlement_sync.backoff import BackoffExecutor, BackoffPolicy
from cow_settlement_sync.chain.client import BlockSource
from cow_settlement_sync.config import Settings, get_settings
from cow_settlement_sync.enrichment.orders_api import OrderFillsClient
from cow_settlement_sync.networks import KNOWN_NETWORKS, NetworkConfig, NetworkConfigError
from cow_settlement_sync.storage.database import DatabaseManager
from cow_settlement_sync.storage.repos import TradeRecord, TradeRepository, TradeStats
from cow_settlement_sync.storage.store import TradeStore
from cow_settlement_sync.sync.historical import HistoricalSyncController
from cow_settlement_sync.sync.orchestrator import MultiNetworkOrchestrator
from cow_settlement_sync.sync.realtime import RealtimeSyncController
from cow_settlement_sync.sync.retention import TradeRetention, cutoff_from_months, format_plan

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
NOISY_LOGGERS = ("web3", "httpx", "httpcore", "aiohttp", "asyncio")


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be a positive integer, got {value}")
    return number


def _utc_date(value: str) -> datetime:
    try:
        return datetime.strptime(value, "%Y-%m-%d").replace(tzinfo=UTC)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"expected YYYY-MM-DD, got {value!r}") from e


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cow-settlement-sync",
        description="Ingest settlement contract trades into a SQL store",
    )
    parser.add_argument("--log-level", choices=LOG_LEVELS, help="Override LOG_LEVEL")
    subparsers = parser.add_subparsers(dest="command", required=True)

    historical = subparsers.add_parser("historical", help="Backfill trades from the chain head backwards")
    historical.add_argument("-m", "--months", type=_positive_int, help="Lookback window in 30-day months")
    historical.add_argument(
        "-f",
        "--force",
        action="store_true",
        help="Allow a lookback beyond SYNC_MAX_LOOKBACK_MONTHS",
    )
    historical.add_argument(
        "--network",
        type=int,
        nargs="+",
        metavar="CHAIN_ID",
        help="Networks to sync, in order (default: SYNC_NETWORKS)",
    )
    historical.add_argument(
        "--scan-mode",
        choices=("blocks", "logs"),
        help="Visit every block, or only blocks with Trade events (default: SYNC_SCAN_MODE)",
    )
    historical.add_argument(
        "--reprocess",
        action="store_true",
        help="Re-fetch and replace transactions that are already stored",
    )

    realtime = subparsers.add_parser("realtime", help="Follow the chain head until interrupted")
    realtime.add_argument("--network", type=int, required=True, metavar="CHAIN_ID", help="Network to follow")

    prune = subparsers.add_parser("prune", help="Delete trades older than a cutoff (dry run by default)")
    prune.add_argument("--network", type=int, required=True, metavar="CHAIN_ID", help="Network to prune")
    cutoff = prune.add_mutually_exclusive_group(required=True)
    cutoff.add_argument("--months", type=_positive_int, help="Keep the last N 30-day months")
    cutoff.add_argument("--before", type=_utc_date, metavar="YYYY-MM-DD", help="Delete trades before this UTC date")
    prune.add_argument("--execute", action="store_true", help="Actually delete the selected trades")

    stats = subparsers.add_parser("stats", help="Show what is stored per network")
    stats.add_argument(
        "--network",
        type=int,
        nargs="+",
        metavar="CHAIN_ID",
        help="Networks to report on (default: SYNC_NETWORKS)",
    )
    stats.add_argument("--limit", type=_positive_int, default=10, help="Number of latest trades to list")

    subparsers.add_parser("init-db", help="Create the database schema directly (local use)")

    return parser


def configure_logging(level: int) -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT, force=True)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def _requested_networks(args: argparse.Namespace) -> list[int] | None:
    network = getattr(args, "network", None)
    if network is None:
        return None
    return network if isinstance(network, list) else [network]


def build_database(settings: Settings) -> DatabaseManager:
    return DatabaseManager(
        settings.database.url,
        pool_size=settings.database.pool_size,
        echo=settings.database.echo,
    )


def build_backoff(settings: Settings, *, jitter: bool = False) -> BackoffExecutor:
    return BackoffExecutor(BackoffPolicy.from_settings(settings.backoff), jitter=jitter)


def build_redis(settings: Settings) -> Redis | None:
    if not settings.redis.enabled or settings.redis.url is None:
        return None
    return Redis.from_url(settings.redis.url)


def build_block_source(network: NetworkConfig, settings: Settings) -> BlockSource:
    return BlockSource(
        network.rpc_url,
        max_requests_per_second=settings.rpc.max_requests_per_second,
        request_timeout=settings.rpc.request_timeout_seconds,
    )


def build_fills_client(network: NetworkConfig, settings: Settings, redis: Redis | None) -> OrderFillsClient:
    return OrderFillsClient(
        network.api_base_url,
        chain_id=network.chain_id,
        timeout=settings.settlement_api.timeout_seconds,
        redis=redis,
        cache_ttl_seconds=settings.redis.fills_cache_ttl_seconds,
    )


async def _database_ready(db: DatabaseManager) -> bool:
    try:
        await db.check_connection()
    except (SQLAlchemyError, OSError) as e:
        logger.error("Database is unreachable: %s", e)
        return False
    return True


async def _close_redis(redis: Redis | None) -> None:
    if redis is not None:
        await redis.aclose()


async def run_historical(args: argparse.Namespace, settings: Settings) -> int:
    networks = settings.resolve_networks(_requested_networks(args))
    months = args.months or settings.sync.lookback_months
    scan_mode = args.scan_mode or settings.sync.scan_mode

    db = build_database(settings)
    if not await _database_ready(db):
        await db.dispose_async()
        return 1

    redis = build_redis(settings)
    backoff = build_backoff(settings, jitter=True)

    async def controller_factory(network: NetworkConfig) -> HistoricalSyncController:
        return HistoricalSyncController(
            network,
            build_block_source(network, settings),
            build_fills_client(network, settings, redis),
            TradeStore(db, network.chain_id),
            backoff=backoff,
            months=months,
            max_months=settings.sync.max_lookback_months,
            force=args.force,
            cooldown_seconds=settings.sync.historical_cooldown_seconds,
            scan_mode=scan_mode,
            log_chunk_size=settings.sync.log_chunk_size,
            min_log_chunk_size=settings.sync.min_log_chunk_size,
            chunk_delay_seconds=settings.sync.chunk_delay_seconds,
            reprocess=args.reprocess,
        )

    try:
        results = await MultiNetworkOrchestrator(networks, controller_factory).run()
    finally:
        await _close_redis(redis)
        await db.dispose_async()

    for result in results:
        if result.succeeded:
            logger.info("%s: completed", result.network.label)
        else:
            logger.warning("%s: failed (%s)", result.network.label, result.error)
    return 0


async def run_realtime(args: argparse.Namespace, settings: Settings) -> int:
    network = settings.resolve_networks([args.network])[0]

    db = build_database(settings)
    if not await _database_ready(db):
        await db.dispose_async()
        return 1

    redis = build_redis(settings)
    controller = RealtimeSyncController(
        network,
        build_block_source(network, settings),
        build_fills_client(network, settings, redis),
        TradeStore(db, network.chain_id, owns_database=True),
        backoff=build_backoff(settings, jitter=False),
        poll_interval_seconds=settings.sync.poll_interval_seconds,
        cooldown_seconds=settings.sync.realtime_cooldown_seconds,
        report_interval_seconds=settings.sync.report_interval_seconds,
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, controller.stop)
    try:
        await controller.run()
    except Exception:
        logger.exception("Realtime sync on %s could not start", network.label)
        return 1
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        await _close_redis(redis)
    return 0


async def run_prune(args: argparse.Namespace, settings: Settings) -> int:
    network = settings.resolve_networks([args.network])[0]
    cutoff = args.before if args.before is not None else cutoff_from_months(args.months)

    db = build_database(settings)
    if not await _database_ready(db):
        await db.dispose_async()
        return 1

    source = build_block_source(network, settings)
    try:
        retention = TradeRetention(db, source, backoff=build_backoff(settings))
        plan = await retention.plan(network.chain_id, cutoff)
        print(format_plan(plan, network_label=network.label))
        if args.execute:
            deleted = await retention.execute(plan)
            print(f"Deleted {deleted} records.")
        else:
            print("Dry run: nothing deleted. Re-run with --execute to delete.")
    finally:
        await source.aclose()
        await db.dispose_async()
    return 0


def _network_label(chain_id: int) -> str:
    known = KNOWN_NETWORKS.get(chain_id)
    return f"{known.name} ({chain_id})" if known else f"chain {chain_id}"


def format_stats(stats: TradeStats, latest: list[TradeRecord]) -> str:
    def _when(value: datetime | None) -> str:
        return value.isoformat() if value else "-"

    lines = [
        f"Stored trades for {_network_label(stats.chain_id)}",
        f"  Records: {stats.total_records}",
        f"  Transactions: {stats.total_transactions}",
        f"  Blocks: {stats.first_block if stats.first_block is not None else '-'}"
        f" .. {stats.last_block if stats.last_block is not None else '-'}",
        f"  Time range: {_when(stats.first_timestamp)} .. {_when(stats.last_timestamp)}",
        f"  Distinct sell tokens: {stats.distinct_sell_tokens}",
        f"  Distinct buy tokens: {stats.distinct_buy_tokens}",
    ]
    if latest:
        lines.append("  Latest trades:")
        for record in latest:
            lines.append(
                f"    block {record.block_number} {record.tx_hash}#{record.fill_index} "
                f"{record.kind} {record.sell_amount} {record.sell_token} -> "
                f"{record.buy_amount} {record.buy_token}"
            )
    return "\n".join(lines)


async def run_stats(args: argparse.Namespace, settings: Settings) -> int:
    chain_ids = _requested_networks(args) or list(settings.sync.networks)

    db = build_database(settings)
    if not await _database_ready(db):
        await db.dispose_async()
        return 1

    try:
        async with db.get_async_session() as session:
            repo = TradeRepository(session)
            for chain_id in chain_ids:
                stats = await repo.stats(chain_id)
                latest = await repo.list_latest(chain_id, limit=args.limit)
                print(format_stats(stats, latest))
    finally:
        await db.dispose_async()
    return 0


async def run_init_db(settings: Settings) -> int:
    db = build_database(settings)
    try:
        await db.init_schema_async()
    except (SQLAlchemyError, OSError) as e:
        logger.error("Schema initialization failed: %s", e)
        return 1
    finally:
        await db.dispose_async()
    print("Database schema created.")
    return 0


async def dispatch(args: argparse.Namespace, settings: Settings) -> int:
    if args.command == "historical":
        return await run_historical(args, settings)
    if args.command == "realtime":
        return await run_realtime(args, settings)
    if args.command == "prune":
        return await run_prune(args, settings)
    if args.command == "stats":
        return await run_stats(args, settings)
    if args.command == "init-db":
        return await run_init_db(settings)
    raise ValueError(f"Unknown command: {args.command}")


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    configure_logging(getattr(logging, args.log_level or "INFO"))
    try:
        settings = get_settings()
    except ValidationError as e:
        logger.error("Invalid configuration:\n%s", e)
        return 1
    if args.log_level is None:
        configure_logging(settings.get_logging_level())
    logger.debug("Configuration: %s", settings.redacted_summary())

    try:
        settings.validate_requirements(command=args.command, chain_ids=_requested_networks(args))
    except (NetworkConfigError, ValueError) as e:
        logger.error("Invalid configuration: %s", e)
        return 1

    return asyncio.run(dispatch(args, settings))


if __name__ == "__main__":
    raise SystemExit(main())

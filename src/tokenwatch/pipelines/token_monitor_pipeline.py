"""Token Monitor Pipeline

Watches every Binance instrument of one token across spot, USD-M and
COIN-M perpetuals and renders a live table.

The pipeline:
1. Parses the command line and loads settings (JSON defaults, env, flags)
2. Loads instrument catalogs for the enabled categories, with host fallback
3. Matches the token, deduplicates and allocates up to ``--max`` targets
4. Starts the collectors for every target plus the renderer, forever

Usage:
    tokenwatch PEPE --max 20 --no-spot
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Optional, Sequence

from rich.console import Console

from tokenwatch.collectors.instrument_collectors import polling_worker_count, spawn_collectors
from tokenwatch.core.config import (
    ConfigError,
    MonitorSettings,
    apply_cli_overrides,
    load_settings,
)
from tokenwatch.core.models import CatalogEntry, InstrumentCategory, StreamCapability, Target
from tokenwatch.data.row_store import RowStore
from tokenwatch.display.renderer import SnapshotRenderer
from tokenwatch.exchanges.binance_rest import BinanceRestClient
from tokenwatch.exchanges.catalog import CatalogLoader, load_raw_catalog
from tokenwatch.matching.allocator import (
    NoMatchingInstruments,
    allocate,
    build_targets,
    dedupe_candidates,
)
from tokenwatch.matching.matcher import MatchFilters, match_catalog
from tokenwatch.utils.logger import setup_logger

# Resolve project root (three levels up: src/tokenwatch/pipelines/ -> repo root)
ROOT = Path(__file__).resolve().parents[3]
DEFAULT_CONFIG_PATH = ROOT / "config" / "token_monitor_config.json"


# ---------------------------------------------------------------------------
# STAGE 1: INIT
# ---------------------------------------------------------------------------

def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="tokenwatch",
        description="Live Binance spot / USD-M / COIN-M monitor for one token.",
    )
    # Optional here so a missing token exits with status 1, not argparse's 2
    parser.add_argument("token", nargs="?", default="", help="Token name, e.g. PEPE, BTC, ETH")
    parser.add_argument("--max", type=int, default=None, help="Maximum number of instruments to subscribe to")
    parser.add_argument("--spot", action=argparse.BooleanOptionalAction, default=None, help="Include spot markets")
    parser.add_argument("--futures", action=argparse.BooleanOptionalAction, default=None, help="Include perpetual futures")
    parser.add_argument("--config", type=Path, default=DEFAULT_CONFIG_PATH, help="Path to the JSON config file")
    return parser.parse_args(argv)


def init(args: argparse.Namespace) -> tuple[MonitorSettings, logging.Logger]:
    settings = load_settings(args.config)
    settings = apply_cli_overrides(settings, max_symbols=args.max, spot=args.spot, futures=args.futures)

    log_path = Path(settings.log_path)
    if not log_path.is_absolute():
        log_path = ROOT / log_path
    log_level = getattr(logging, settings.log_level, logging.INFO)

    # The live table owns the terminal, so log to file only
    logger = setup_logger("tokenwatch", log_path, level=log_level, console=False)
    logger.info("========== Token monitor starting ==========")
    logger.info("========== Stage 1 ==========")
    logger.info(f"Config loaded from: {args.config}")
    logger.info(
        f"Token: {args.token.upper()} | "
        f"Enabled: {[c.label for c in settings.enabled_categories]} | "
        f"Max: {settings.max_symbols}"
    )
    return settings, logger


# ---------------------------------------------------------------------------
# STAGE 2: DISCOVER
# ---------------------------------------------------------------------------

async def discover(
    settings: MonitorSettings,
    loader: CatalogLoader,
    rest: BinanceRestClient,
    logger: logging.Logger,
) -> dict[InstrumentCategory, list[CatalogEntry]]:
    """Catalog per enabled category; raw exchangeInfo when every host failed."""
    logger.info("========== Stage 2 ==========")
    catalogs: dict[InstrumentCategory, list[CatalogEntry]] = {}
    for category in settings.enabled_categories:
        entries = await loader.load(category)
        if entries is None:
            logger.warning(f"[{category.label}] Falling back to raw exchangeInfo discovery.")
            entries = await asyncio.to_thread(load_raw_catalog, rest, category, logger)
        catalogs[category] = entries
    return catalogs


# ---------------------------------------------------------------------------
# STAGE 3: RESOLVE
# ---------------------------------------------------------------------------

def stream_capabilities(settings: MonitorSettings) -> dict[InstrumentCategory, StreamCapability]:
    return {
        category: StreamCapability.NATIVE_STREAM if hosts.stream else StreamCapability.POLLING_ONLY
        for category, hosts in settings.hosts.items()
    }


def resolve_targets(
    token: str,
    catalogs: dict[InstrumentCategory, list[CatalogEntry]],
    settings: MonitorSettings,
) -> list[Target]:
    """Match, deduplicate and allocate. Raises ``NoMatchingInstruments`` when empty."""
    filters = MatchFilters.from_settings(settings)
    enabled = settings.enabled_categories

    candidates = []
    for category in enabled:
        candidates.extend(match_catalog(token, catalogs.get(category, []), filters))

    selected = allocate(dedupe_candidates(candidates), enabled, settings.max_symbols)
    if not selected:
        raise NoMatchingInstruments(token)
    return build_targets(selected, stream_capabilities(settings))


def summarize_targets(targets: Sequence[Target]) -> str:
    counts = " / ".join(
        f"{category.label}: {sum(1 for t in targets if t.category is category)}"
        for category in InstrumentCategory
    )
    return f"Subscribing to {len(targets)} instruments ({counts})"


# ---------------------------------------------------------------------------
# STAGE 4: RUN
# ---------------------------------------------------------------------------

async def heartbeat(store: RowStore, logger: logging.Logger, interval_sec: int = 600):
    while True:
        await asyncio.sleep(interval_sec)
        logger.info(f"Heartbeat: monitor is running ({len(store)} rows).")


async def run_monitor(
    token: str,
    targets: Sequence[Target],
    settings: MonitorSettings,
    rest: BinanceRestClient,
    logger: logging.Logger,
    console: Optional[Console] = None,
) -> None:
    logger.info("========== Stage 4 ==========")
    store = RowStore()
    executor = ThreadPoolExecutor(
        max_workers=max(1, polling_worker_count(targets)),
        thread_name_prefix="rest",
    )

    tasks: list[asyncio.Task] = []
    for target in targets:
        logger.info(
            f"[{target.category.label}] {target.symbol} ({target.native_id}) "
            f"-> {target.capability.value}"
        )
        tasks.extend(spawn_collectors(target, store, rest, settings, logger, executor))

    renderer = SnapshotRenderer(
        store,
        token=token,
        enabled=settings.enabled_categories,
        interval=settings.render_interval,
        funding_eps=settings.funding_rate_eps,
        type_color=settings.type_color,
        console=console,
    )
    tasks.append(asyncio.create_task(renderer.run_forever(), name="renderer"))
    tasks.append(asyncio.create_task(heartbeat(store, logger), name="heartbeat"))

    try:
        await asyncio.gather(*tasks)
    finally:
        executor.shutdown(wait=False, cancel_futures=True)


# ---------------------------------------------------------------------------
# MAIN ENTRY POINT
# ---------------------------------------------------------------------------

async def _discover_and_resolve(
    token: str,
    settings: MonitorSettings,
    rest: BinanceRestClient,
    logger: logging.Logger,
) -> list[Target]:
    loader = CatalogLoader(
        settings.hosts,
        timeout=settings.request_timeout,
        proxy=settings.proxy,
        logger=logger,
    )
    catalogs = await discover(settings, loader, rest, logger)
    logger.info("========== Stage 3 ==========")
    return resolve_targets(token, catalogs, settings)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    console = Console()

    token = args.token.strip().upper()
    if not token:
        console.print("[red]Please provide a token name, e.g. PEPE[/red]")
        return 1

    try:
        settings, logger = init(args)
    except (ConfigError, OSError, ValueError) as exc:
        console.print(f"[red]Configuration error: {exc}[/red]")
        return 1

    rest = BinanceRestClient(
        {category: hosts.rest for category, hosts in settings.hosts.items()},
        timeout=settings.request_timeout,
        proxy=settings.proxy,
    )

    try:
        with console.status("Loading exchange and market metadata ..."):
            targets = asyncio.run(_discover_and_resolve(token, settings, rest, logger))
    except NoMatchingInstruments as exc:
        logger.info(str(exc))
        console.print(f"[yellow]{exc}[/yellow]")
        rest.close()
        return 0
    except Exception as exc:
        logger.exception("Resolution failed")
        console.print(f"[red]Resolution failed: {exc}[/red]")
        rest.close()
        return 1

    summary = summarize_targets(targets)
    logger.info(summary)
    console.print(f"[bright_black]{summary}[/bright_black]")

    try:
        asyncio.run(run_monitor(token, targets, settings, rest, logger, console))
    except KeyboardInterrupt:
        logger.info("Token monitor stopped by user.")
    finally:
        rest.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())

"""
Cross-chain arbitrage bot.

Modes:
  simulation  — two in-memory constant-product pools with a random price
                walk; full pipeline (oracle, evaluator, coordinator, unwind,
                health, alerts, metrics). No RPC, no keys.

  live        — real pools over JSON-RPC (``<CHAIN>_RPC_URL``,
                ``<CHAIN>_POOL_ADDRESS``, ``PRIVATE_KEY``).
                Execution starts disabled (prices only) unless ``--enabled``
                or ``ARB_ENABLED=true``; toggle via ``POST /api/toggle``.

Usage:
  python scripts/arb_bot.py --enabled             # simulation, trading on
  python scripts/arb_bot.py --mode live           # watch prices only
  python scripts/arb_bot.py --mode live --enabled
"""

# flake8: noqa

import argparse
import asyncio
import logging
import signal
import sys
from datetime import datetime
from pathlib import Path

# Ensure src/ is on sys.path so bare imports work from scripts/
sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from bot import (  # noqa: E402
    BotConfig,
    CrossChainArbBot,
    build_live_connections,
    build_simulated_connections,
    market_random_walk,
)

logger = logging.getLogger("arb_bot")


def _setup_logging(level: str, log_dir: str | None) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_dir:
        path = Path(log_dir)
        path.mkdir(exist_ok=True)
        handlers.append(logging.FileHandler(path / f"bot_{datetime.now():%Y%m%d}.log"))
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s |%(levelname)s |%(name)s |%(message)s",
        handlers=handlers,
    )
    # Suppress noisy third-party logs
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("web3").setLevel(logging.WARNING)


def _build_bot(args: argparse.Namespace) -> CrossChainArbBot:
    simulation = args.mode == "simulation"
    config = BotConfig.from_env(simulation=simulation)
    if args.metrics_port is not None:
        config.metrics_port = args.metrics_port
    if args.enabled:
        config.coordinator.enabled = True

    if simulation:
        connections = build_simulated_connections(config, gap_bps=args.sim_gap_bps)
        background = [
            market_random_walk(
                connections,
                interval=config.oracle.refresh_interval,
                volatility_bps=args.sim_volatility_bps,
            )
        ]
        return CrossChainArbBot(config, connections, background=background)
    return CrossChainArbBot(config, build_live_connections(config))


async def _run(bot: CrossChainArbBot) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, bot.stop)
        except NotImplementedError:
            # Windows: fall back to KeyboardInterrupt
            pass
    await bot.run()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(
        description="Cross-chain AMM Arbitrage Bot",
        formatter_class=argparse.RawTextHelpFormatter,
    )
    parser.add_argument(
        "--mode",
        choices=["simulation", "live"],
        default="simulation",
        help=(
            "simulation — in-memory pools with a random price walk\n"
            "live       — real pools over JSON-RPC"
        ),
    )
    parser.add_argument(
        "--enabled",
        action="store_true",
        help="Start with execution enabled (default: disabled, toggle via POST /api/toggle).",
    )
    parser.add_argument(
        "--metrics-port",
        type=int,
        default=None,
        help="Metrics/status server port (0 disables). Default: METRICS_PORT or 9090.",
    )
    parser.add_argument(
        "--sim-gap-bps",
        type=float,
        default=150.0,
        help="Simulation only: initial price gap between the two pools.",
    )
    parser.add_argument(
        "--sim-volatility-bps",
        type=float,
        default=40.0,
        help="Simulation only: max price move per refresh interval.",
    )
    parser.add_argument("--log-level", default="INFO")
    parser.add_argument(
        "--log-dir",
        default="logs",
        help="Directory for daily log files ('' for stdout only).",
    )
    args = parser.parse_args()

    _setup_logging(args.log_level, args.log_dir or None)

    bot = _build_bot(args)
    try:
        asyncio.run(_run(bot))
    except KeyboardInterrupt:
        logger.info("Interrupted")

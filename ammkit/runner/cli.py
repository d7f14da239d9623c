"""Command-line runner for the AMM engine."""

import argparse
import asyncio
import logging
import sys
from typing import Any

import structlog

from ..config.settings import PROFILES, EngineSettings, load_settings
from ..core.errors import AmmError
from ..core.interfaces import LedgerGateway
from ..core.types import TimeFrame, TradeParams
from ..events.bus import PriceEventBus
from ..exec.executor import TradeExecutor
from ..exec.quote import QuoteEngine
from ..ledger.rpc import RpcLedgerGateway
from ..pool.registry import PoolRegistry
from ..price.aggregator import PriceAggregator
from ..price.history import PriceHistory
from ..token.birdeye import BirdeyeMetadataService
from ..token.info import TokenInfoService

logger = structlog.get_logger(__name__)

# Placeholder payer for read-only quoting; quotes do not depend on the user.
_QUOTE_USER = "11111111111111111111111111111111"


def configure_logging(level: str = "INFO") -> None:
    """Route structlog output to a console renderer at ``level``."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
        cache_logger_on_first_use=False,
    )


class Engine:
    """Engine components assembled from settings."""

    def __init__(
        self, settings: EngineSettings, gateway: LedgerGateway | None = None
    ) -> None:
        """Initialize the engine.

        Args:
            settings: Engine settings
            gateway: Ledger gateway (an RPC gateway is created if omitted)
        """
        self.settings = settings
        self.components = self._assemble(settings, gateway)
        logger.info(
            "Engine initialized",
            profile=settings.profile,
            program_id=settings.pool_program_id,
        )

    def __getitem__(self, name: str) -> Any:
        return self.components[name]

    def _assemble(
        self, settings: EngineSettings, gateway: LedgerGateway | None
    ) -> dict[str, Any]:
        """Assemble all engine components from settings.

        Returns:
            Dictionary of assembled components
        """
        components: dict[str, Any] = {}

        if gateway is None:
            gateway = RpcLedgerGateway(
                rpc_url=settings.rpc_url,
                ws_url=settings.ws_url,
                commitment=settings.commitment,
                timeout=settings.ledger_timeout_seconds,
            )
        components["gateway"] = gateway

        components["registry"] = PoolRegistry(
            gateway,
            program_id=settings.pool_program_id,
            max_scan_accounts=settings.max_scan_accounts,
            snapshot_ttl_seconds=settings.snapshot_ttl_seconds,
            pool_cache_ttl_seconds=settings.pool_cache_ttl_seconds,
            ledger_timeout_seconds=settings.ledger_timeout_seconds,
            retry_attempts=settings.retry_attempts,
        )

        components["history"] = PriceHistory(max_samples=settings.history_max_samples)
        components["aggregator"] = PriceAggregator(
            components["registry"],
            quote_mint=settings.quote_mint,
            usd_mint=settings.usd_mint,
            min_liquidity=settings.min_liquidity,
            outlier_tolerance=settings.outlier_tolerance,
            fallback_sol_usd_price=settings.fallback_sol_usd_price,
            history=components["history"],
        )

        components["quotes"] = QuoteEngine(
            components["registry"],
            pool_max_age_seconds=settings.pool_max_age_seconds,
            quote_ttl_seconds=settings.quote_ttl_seconds,
            max_price_impact_pct=settings.max_price_impact_pct,
        )
        components["executor"] = TradeExecutor(
            gateway,
            components["registry"],
            components["quotes"],
            program_id=settings.pool_program_id,
            quote_mint=settings.quote_mint,
            history=components["history"],
            max_submit_attempts=settings.max_submit_attempts,
            confirm_timeout_seconds=settings.confirm_timeout_seconds,
            confirm_poll_interval=settings.confirm_poll_interval,
            ledger_timeout_seconds=settings.ledger_timeout_seconds,
            simulate=settings.simulate_swaps,
        )

        components["bus"] = PriceEventBus(
            gateway,
            components["registry"],
            components["aggregator"],
            buffer_size=settings.bus_buffer_size,
            max_reconnect_attempts=settings.max_reconnect_attempts,
            reconnect_base_delay=settings.reconnect_base_delay,
            reconnect_max_delay=settings.reconnect_max_delay,
        )

        metadata = None
        if settings.birdeye_api_key:
            metadata = BirdeyeMetadataService(
                settings.birdeye_base, api_key=settings.birdeye_api_key
            )
            logger.info("Using Birdeye metadata service")
        else:
            logger.info("Birdeye API key not provided, token metadata disabled")
        components["tokens"] = TokenInfoService(
            gateway,
            metadata_service=metadata,
            ledger_timeout_seconds=settings.ledger_timeout_seconds,
            retry_attempts=settings.retry_attempts,
        )
        return components

    async def aclose(self) -> None:
        await self.components["bus"].close()
        metadata = self.components["tokens"].metadata_service
        if metadata is not None:
            await metadata.aclose()
        gateway = self.components["gateway"]
        if hasattr(gateway, "aclose"):
            await gateway.aclose()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ammkit", description="AMM pool engine")
    parser.add_argument(
        "--config", default="configs/devnet.yaml", help="Configuration file path"
    )
    parser.add_argument(
        "--profile", default="devnet", choices=PROFILES, help="Configuration profile"
    )
    commands = parser.add_subparsers(dest="command", required=True)

    price = commands.add_parser("price", help="Show the price of a token")
    price.add_argument("mint")
    price.add_argument("--secure", action="store_true", help="Liquidity-weighted price")

    pools = commands.add_parser("pools", help="List pools of a token")
    pools.add_argument("mint")

    quote = commands.add_parser("quote", help="Quote a swap")
    quote.add_argument("input_mint")
    quote.add_argument("output_mint")
    quote.add_argument("amount", type=int, help="Raw input amount")
    quote.add_argument("--slippage-bps", type=int, default=None)

    token = commands.add_parser("token", help="Show token supply and metadata")
    token.add_argument("mint")

    watch = commands.add_parser("watch", help="Stream live prices of a token")
    watch.add_argument("mint")
    watch.add_argument("--count", type=int, default=0, help="Stop after N updates")
    watch.add_argument(
        "--timeframe",
        choices=[tf.value for tf in TimeFrame],
        default=None,
        help="Print candles of the streamed prices on exit",
    )
    return parser


async def run_command(engine: Engine, args: argparse.Namespace) -> int:
    """Execute one CLI command against an assembled engine.

    Returns:
        Process exit code
    """
    if args.command == "price":
        aggregator: PriceAggregator = engine["aggregator"]
        if args.secure:
            price = await aggregator.get_secure_price(args.mint)
        else:
            price = await aggregator.get_current_price(args.mint)
        print(
            f"{price.mint} {price.sol_price:.9f} SOL ${price.usd_price:.6f} "
            f"liquidity={price.liquidity:.3f} pools={price.pool_count}"
            + (" (low confidence)" if price.low_confidence else "")
        )
        return 0

    if args.command == "pools":
        addresses = await engine["registry"].find_token_pools(args.mint)
        for address in addresses:
            print(address)
        scan = engine["registry"].last_scan
        if scan is not None and scan.truncated:
            print("warning: scan truncated, results may be incomplete", file=sys.stderr)
        return 0

    if args.command == "quote":
        slippage = (
            args.slippage_bps
            if args.slippage_bps is not None
            else engine.settings.max_slippage_bps
        )
        quote = await engine["quotes"].get_quote_with_validation(
            TradeParams(
                input_mint=args.input_mint,
                output_mint=args.output_mint,
                amount_in=args.amount,
                slippage_bps=slippage,
                user=_QUOTE_USER,
            )
        )
        print(
            f"pool={quote.pool_address} out={quote.amount_out} "
            f"min_out={quote.min_amount_out} fee={quote.fee_amount} "
            f"impact={quote.price_impact:.4f}%"
        )
        return 0

    if args.command == "token":
        info = await engine["tokens"].get_token_info(args.mint)
        name = info.metadata.symbol if info.metadata else "?"
        print(
            f"{info.mint} {name} decimals={info.decimals} supply={info.supply} "
            f"holders={info.holder_count}"
        )
        return 0

    if args.command == "watch":
        return await _watch(engine, args)

    raise ValueError(f"Unknown command: {args.command}")


async def _watch(engine: Engine, args: argparse.Namespace) -> int:
    bus: PriceEventBus = engine["bus"]
    receiver = await bus.subscribe(args.mint)
    listener = asyncio.create_task(bus.start_listening())
    received = 0
    try:
        async for price in receiver:
            received += 1
            print(f"{price.timestamp.isoformat()} {price.sol_price:.9f} SOL ${price.usd_price:.6f}")
            if args.count and received >= args.count:
                break
    finally:
        await bus.unsubscribe(receiver)
        await bus.close()
        await listener

    if args.timeframe:
        candles = await engine["aggregator"].get_historical_prices(
            args.mint, TimeFrame(args.timeframe), limit=100
        )
        for candle in candles:
            print(
                f"{candle.timestamp.isoformat()} o={candle.open:.9f} h={candle.high:.9f} "
                f"l={candle.low:.9f} c={candle.close:.9f}"
            )

    if receiver.error is not None:
        logger.error("Price stream closed", mint=args.mint, error=str(receiver.error))
        return 1
    return 0


async def run(argv: list[str] | None = None, gateway: LedgerGateway | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = load_settings(args.profile, args.config)
    configure_logging(settings.log_level)

    engine = Engine(settings, gateway=gateway)
    try:
        return await run_command(engine, args)
    except AmmError as e:
        logger.error("Command failed", command=args.command, error=str(e))
        return 1
    finally:
        await engine.aclose()


def main() -> None:
    """Main entry point for the ammkit command."""
    try:
        sys.exit(asyncio.run(run()))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    main()

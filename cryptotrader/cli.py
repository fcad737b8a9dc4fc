"""CLI tool for running and operating the trader.

Usage:
    python -m cryptotrader.cli run
    python -m cryptotrader.cli serve [host] [port]
    python -m cryptotrader.cli validate-config [strategy-file]
    python -m cryptotrader.cli emergency-stop
"""

import asyncio
import sys

from cryptotrader.config import settings
from cryptotrader.errors import ConfigurationError
from cryptotrader.schemas.strategy import load_strategy_config
from cryptotrader.utils.logging import setup_logging


def validate_config(path: str) -> int:
    """Load a strategy file and print what it configures."""
    try:
        strategy = load_strategy_config(path)
    except ConfigurationError as e:
        print(f"Invalid strategy file {path}:\n{e}")
        return 1

    print(f"{path}: OK ({strategy.slot_count} allocation slot(s), quote {strategy.quote_asset})")
    for pair in strategy.pairs:
        extras = []
        if pair.stop_percent is not None:
            extras.append(f"stop {pair.stop_percent}%")
        if pair.leverage is not None:
            extras.append(f"leverage x{pair.leverage}")
        if pair.short_enabled:
            extras.append("short")
        print(
            f"  {pair.symbol:<14} {pair.timeframe:<4} {pair.signal_kind.value:<6} "
            f"{pair.order_type.value:<7} {' '.join(extras)}"
        )
    for group in strategy.bvlt_groups:
        print(f"  {group.name} (BVLT) {group.primary.timeframe} {group.primary.signal_kind.value}")
    return 0


async def _run():
    from cryptotrader.engine.controller import build_controller

    controller = build_controller(settings)
    try:
        await controller.start()
        await controller.wait()
    finally:
        await controller.close()


async def _emergency_stop() -> dict:
    from cryptotrader.engine.controller import build_controller

    controller = build_controller(settings)
    try:
        controller.store.ensure_pairs(controller.strategy.traded_symbols)
        return await controller.emergency_stop()
    finally:
        await controller.close()


def main():
    if len(sys.argv) < 2:
        print("Usage: python -m cryptotrader.cli <command>")
        print("Commands: run, serve, validate-config, emergency-stop")
        sys.exit(1)

    command = sys.argv[1]
    if command == "validate-config":
        path = sys.argv[2] if len(sys.argv) > 2 else settings.strategy_file
        sys.exit(validate_config(path))

    setup_logging()
    if command == "run":
        try:
            asyncio.run(_run())
        except ConfigurationError as e:
            print(f"Configuration error: {e}")
            sys.exit(1)
        except KeyboardInterrupt:
            pass
    elif command == "serve":
        import uvicorn

        host = sys.argv[2] if len(sys.argv) > 2 else "127.0.0.1"
        port = int(sys.argv[3]) if len(sys.argv) > 3 else 8000
        uvicorn.run("cryptotrader.main:app", host=host, port=port)
    elif command == "emergency-stop":
        result = asyncio.run(_emergency_stop())
        print(f"Orders canceled: {result['orders_canceled']}")
        print(f"Positions closed: {result['positions_closed']}")
        for error in result["errors"]:
            print(f"  error: {error}")
        sys.exit(1 if result["errors"] else 0)
    else:
        print(f"Unknown command: {command}")
        sys.exit(1)


if __name__ == "__main__":
    main()

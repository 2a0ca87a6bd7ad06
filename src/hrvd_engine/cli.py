"""
HRVD Engine - Command Line Entry Point

Usage:
    hrvd-replay replay --data bars.csv --config config/engine.yaml
    hrvd-replay replay --data bars.csv --bar-minutes 1 --slippage --seed 7
    hrvd-replay validate --config config/engine.yaml
    hrvd-replay show-config --output engine.yaml
"""

import argparse
import sys
from datetime import timedelta
from typing import Optional

import pandas as pd

from .config import EngineConfig, DEFAULT_CONFIG
from .errors import ConfigurationError
from .logging_module import setup_logging
from .replay import BarReplay, print_summary


def load_config(path: Optional[str]) -> EngineConfig:
    """Config from YAML, or the defaults."""
    if path is None:
        return DEFAULT_CONFIG
    return EngineConfig.from_yaml(path)


def load_bars(path: str) -> pd.DataFrame:
    """Read OHLCV bars from CSV."""
    df = pd.read_csv(path)
    if "timestamp" in df.columns:
        df["timestamp"] = pd.to_datetime(df["timestamp"], utc=True)
    return df.sort_values("timestamp") if "timestamp" in df.columns else df


def main(argv=None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description='HRVD volume/price decision engine'
    )

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    # Replay command
    replay_parser = subparsers.add_parser('replay', help='Replay historical bars')
    replay_parser.add_argument('--data', type=str, required=True, help='OHLCV CSV file')
    replay_parser.add_argument('--config', type=str, default=None, help='YAML config file')
    replay_parser.add_argument('--bar-minutes', type=int, default=None, help='Bar length in minutes (default: median timestamp spacing)')
    replay_parser.add_argument('--slippage', action='store_true', help='Apply ATR slippage to entries')
    replay_parser.add_argument('--seed', type=int, default=None, help='Slippage RNG seed')
    replay_parser.add_argument('--trades', type=str, default=None, help='Write trade list to CSV')

    # Validate command
    validate_parser = subparsers.add_parser('validate', help='Validate a config file')
    validate_parser.add_argument('--config', type=str, required=True, help='YAML config file')

    # Show config command
    show_parser = subparsers.add_parser('show-config', help='Write the default config as YAML')
    show_parser.add_argument('--output', type=str, required=True, help='Destination YAML file')

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    try:
        if args.command == 'replay':
            config = load_config(args.config)
            setup_logging(config.logging)

            replay = BarReplay(config, apply_slippage=args.slippage, seed=args.seed)
            bar_duration = timedelta(minutes=args.bar_minutes) if args.bar_minutes else None
            result = replay.run(load_bars(args.data), bar_duration)
            print_summary(result)

            if args.trades:
                result.to_frame().to_csv(args.trades, index=False)
                print(f"Trades written to {args.trades}")

        elif args.command == 'validate':
            config = EngineConfig.from_yaml(args.config)
            is_valid, errors = config.validate()
            if not is_valid:
                print("Configuration INVALID:")
                for error in errors:
                    print(f"  - {error}")
                return 1
            print("Configuration OK")

        elif args.command == 'show-config':
            DEFAULT_CONFIG.to_yaml(args.output)
            print(f"Default configuration written to {args.output}")

    except ConfigurationError as e:
        print(f"Configuration error: {e}")
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted.")
        return 130

    return 0


if __name__ == '__main__':
    sys.exit(main())

"""
Tests for the command line entry point.
"""

import logging

import numpy as np
import pandas as pd
import pytest
import yaml

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from hrvd_engine.cli import load_bars, main
from hrvd_engine.config import EngineConfig
from hrvd_engine.logging_module import LOGGER_NAME


@pytest.fixture(autouse=True)
def reset_engine_logger():
    yield
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


@pytest.fixture
def bars_csv(tmp_path):
    rng = np.random.default_rng(4)
    n = 120
    close = 20000.0 + np.cumsum(rng.normal(0, 2.0, n))
    df = pd.DataFrame({
        "timestamp": pd.date_range("2026-01-13 14:30", periods=n, freq="1min", tz="UTC"),
        "open": close,
        "high": close + 1.0,
        "low": close - 1.0,
        "close": close,
        "volume": rng.integers(200, 2000, n),
    })
    # Shuffled on disk; load_bars restores time order
    path = tmp_path / "bars.csv"
    df.sample(frac=1.0, random_state=1).to_csv(path, index=False)
    return path


class TestCommands:

    def test_no_command_prints_help(self, capsys):
        assert main([]) == 1
        assert "usage" in capsys.readouterr().out.lower()

    def test_show_config_then_validate(self, tmp_path, capsys):
        path = tmp_path / "engine.yaml"
        assert main(["show-config", "--output", str(path)]) == 0
        assert EngineConfig.from_yaml(path) == EngineConfig()

        assert main(["validate", "--config", str(path)]) == 0
        assert "Configuration OK" in capsys.readouterr().out

    def test_validate_reports_errors(self, tmp_path, capsys):
        path = tmp_path / "bad.yaml"
        path.write_text(yaml.safe_dump({"stops": {"min_stop_ticks": 10, "max_stop_ticks": 5}}))

        assert main(["validate", "--config", str(path)]) == 1
        out = capsys.readouterr().out
        assert "INVALID" in out
        assert "max_stop_ticks" in out

    def test_unknown_section_is_configuration_error(self, tmp_path, capsys):
        path = tmp_path / "typo.yaml"
        path.write_text(yaml.safe_dump({"stop": {"atr_period": 10}}))
        assert main(["validate", "--config", str(path)]) == 1
        assert "Configuration error" in capsys.readouterr().out

    def test_replay_writes_trades(self, bars_csv, tmp_path, capsys):
        trades = tmp_path / "trades.csv"
        code = main([
            "replay", "--data", str(bars_csv), "--bar-minutes", "1",
            "--slippage", "--seed", "7", "--trades", str(trades),
        ])
        assert code == 0
        assert "REPLAY SUMMARY" in capsys.readouterr().out
        assert trades.exists()


def test_load_bars_sorts_by_time(bars_csv):
    df = load_bars(bars_csv)
    assert df["timestamp"].is_monotonic_increasing
    assert str(df["timestamp"].dt.tz) == "UTC"

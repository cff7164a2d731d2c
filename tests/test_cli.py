from __future__ import annotations

import argparse

import pytest
import yaml

from ble_fusion_locator.cli import build_engine, main, parse_reading
from ble_fusion_locator.config_manager import ConfigManager
from ble_fusion_locator.models import Position


@pytest.fixture
def config_path(tmp_path):
    registry = tmp_path / "beacons.csv"
    registry.write_text("beacon_id,x,y\n0001,0,0\n0002,10,0\n", encoding="utf-8")
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump({"paths": {"beacon_db": str(registry)}}), encoding="utf-8")
    return str(path)


def test_parse_reading() -> None:
    assert parse_reading("0001:-62") == ("0001", -62)
    with pytest.raises(argparse.ArgumentTypeError):
        parse_reading("-62")
    with pytest.raises(argparse.ArgumentTypeError):
        parse_reading("0001:loud")


def test_solve_prints_interpolated_position(config_path, capsys) -> None:
    assert main(["--config", config_path, "solve", "0001:-65", "0002:-65", "0404:-40"]) == 0
    out = capsys.readouterr().out.strip()
    assert out == "x=5.000 y=0.000 confidence=2 method=two_beacon"


def test_solve_without_known_beacons_fails(config_path, capsys) -> None:
    assert main(["--config", config_path, "solve", "0404:-40"]) == 1
    assert "无有效信标" in capsys.readouterr().out


def test_build_engine_seeds_configured_start_position(tmp_path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text(
        yaml.safe_dump({"fusion": {"ble_enabled": False, "start_position": [3, 4]}}),
        encoding="utf-8",
    )
    engine = build_engine(ConfigManager(str(path)))
    assert engine.fused_position == Position(3.0, 4.0)

    engine.integrator.on_heading(90.0)
    engine.integrator.on_steps(2)
    position = engine.tick(now=1.0)
    assert position is not None
    assert position.x == pytest.approx(3.0)
    assert position.y == pytest.approx(4.0 + 2 * engine.config.stride_length)


def test_build_engine_without_start_position_waits_for_fix(tmp_path) -> None:
    engine = build_engine(ConfigManager(str(tmp_path / "config.yaml")))
    assert engine.fused_position is None

from __future__ import annotations

import json
from pathlib import Path

import pytest
import serial
from aiohttp.test_utils import unused_port

from autohub._mqtt import MqttRequest
from autohub.config import HubConfig
from autohub.exceptions import HubConfigError
from autohub.hub import Hub


def _refuse(port: str, baud: int, timeout: float) -> object:
    raise serial.SerialException(f"could not open port {port}")


def _config(tmp_path: Path, **overrides: object) -> HubConfig:
    values: dict[str, object] = {
        "settings_file": str(tmp_path / "settings.json"),
        "session_file": str(tmp_path / "session.json"),
        "http_host": "127.0.0.1",
        "http_port": unused_port(),
    }
    values.update(overrides)
    return HubConfig(**values)  # type: ignore[arg-type]


def test_unknown_time_zone_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(HubConfigError):
        Hub(_config(tmp_path, time_zone="Not/AZone"))


@pytest.mark.asyncio
async def test_lifecycle_loads_settings_and_flushes_session(tmp_path: Path) -> None:
    (tmp_path / "settings.json").write_text(
        json.dumps({"MDROID": {"SLACK_URL": "https://hooks.example/T/B/X", "HARDWARE_SERIAL_PORT": "/dev/ttyACM9"}})
    )
    (tmp_path / "session.json").write_text(json.dumps({"KEY_STATE": "FALSE"}))

    async with Hub(_config(tmp_path), serial_opener=_refuse) as hub:
        assert hub.alerts.webhook_url == "https://hooks.example/T/B/X"
        assert [link.port for link in hub.links] == ["/dev/ttyACM9"]
        assert hub.session.get_value("KEY_STATE") == "FALSE"
        hub.session.set("ACC_POWER", "TRUE")

    assert json.loads((tmp_path / "session.json").read_text()) == {"ACC_POWER": "TRUE", "KEY_STATE": "FALSE"}


@pytest.mark.asyncio
async def test_first_start_stamps_settings_file(tmp_path: Path) -> None:
    async with Hub(_config(tmp_path, extra_serial_ports=("/dev/ttyUSB0",)), serial_opener=_refuse) as hub:
        assert hub.settings.get("MDROID", "LAST_USED")
        assert [link.port for link in hub.links] == ["/dev/ttyUSB0"]

    saved = json.loads((tmp_path / "settings.json").read_text())
    assert "LAST_USED" in saved["MDROID"]


@pytest.mark.asyncio
async def test_forwarded_mqtt_request_hits_local_api(tmp_path: Path) -> None:
    async with Hub(_config(tmp_path), serial_opener=_refuse) as hub:
        await hub.start_server()

        status = await hub.forward_request(MqttRequest("POST", "/session/LIGHT_SENSOR_REASON", '{"value": "SUN"}'))
        assert status == 200
        assert hub.session.get_value("LIGHT_SENSOR_REASON") == "SUN"

        status = await hub.forward_request(MqttRequest("GET", "/session/NOPE"))
        assert status == 400


@pytest.mark.asyncio
async def test_loaded_settings_run_power_hooks(tmp_path: Path) -> None:
    (tmp_path / "settings.json").write_text(json.dumps({"BOARD": {"POWER": "sometimes"}}))

    async with Hub(_config(tmp_path), serial_opener=_refuse) as hub:
        assert await hub.session_hooks.wait_idle(2.0)
        assert await hub.settings_hooks.wait_idle(2.0)

        assert hub.settings.get("BOARD", "POWER") == "AUTO"

from __future__ import annotations

from typing import Any

import aiohttp
import pytest

from autohub._influx import InfluxWriter, line_protocol
from autohub.exceptions import ExternalServiceError
from autohub.state.events import ChangeEvent, TableName


class _Resp:
    def __init__(self, status: int, text: str = "") -> None:
        self.status = status
        self._text = text

    async def text(self) -> str:
        return self._text

    async def __aenter__(self) -> _Resp:
        return self

    async def __aexit__(self, *_exc: Any) -> None:
        return None


class FakeHttp:
    def __init__(self, *, ping_status: int = 204, write_status: int = 204, fail: bool = False) -> None:
        self.ping_status = ping_status
        self.write_status = write_status
        self.fail = fail
        self.writes: list[tuple[str, dict[str, str], bytes]] = []
        self.pings = 0

    def get(self, url: str) -> _Resp:
        self.pings += 1
        return _Resp(self.ping_status)

    def post(self, url: str, *, params: dict[str, str], data: bytes) -> _Resp:
        if self.fail:
            raise aiohttp.ClientConnectionError("refused")
        self.writes.append((url, params, data))
        return _Resp(self.write_status, "bad line")


def test_line_protocol() -> None:
    assert line_protocol("main_voltage", 12.6) == "main_voltage value=12.6"
    assert line_protocol("key_state", "ON") == 'key_state value="ON"'
    assert line_protocol("acc_power", True) == 'acc_power value="TRUE"'
    assert line_protocol("note", 'say "hi"') == 'note value="say \\"hi\\""'
    assert line_protocol("speed", 3, {"unit": "km h"}) == "speed,unit=km\\ h value=3"


@pytest.mark.asyncio
async def test_mirror_writes_lower_cased_measurement() -> None:
    http = FakeHttp()
    writer = InfluxWriter(host="http://influx:8086/", database="vehicle", http_session=http)  # type: ignore[arg-type]

    await writer.mirror(ChangeEvent(table=TableName.SESSION, key="MAIN_VOLTAGE", name="MAIN_VOLTAGE", value=12.6))
    await writer.mirror(ChangeEvent(table=TableName.SESSION, key="KEY_STATE", name="KEY_STATE", value="ON"))

    assert http.pings == 1
    assert http.writes == [
        ("http://influx:8086/write", {"db": "vehicle"}, b"main_voltage value=12.6"),
        ("http://influx:8086/write", {"db": "vehicle"}, b'key_state value="ON"'),
    ]


@pytest.mark.asyncio
async def test_write_skipped_while_database_is_down() -> None:
    http = FakeHttp(ping_status=500)
    writer = InfluxWriter(host="http://influx:8086", database="vehicle", http_session=http)  # type: ignore[arg-type]

    assert await writer.write("a value=1") is False
    assert http.writes == []


@pytest.mark.asyncio
async def test_write_errors_raise_external_service_error() -> None:
    writer = InfluxWriter(
        host="http://influx:8086", database="vehicle", http_session=FakeHttp(write_status=400)  # type: ignore[arg-type]
    )
    with pytest.raises(ExternalServiceError, match="HTTP 400"):
        await writer.write("a value=1")

    writer = InfluxWriter(
        host="http://influx:8086", database="vehicle", http_session=FakeHttp(fail=True)  # type: ignore[arg-type]
    )
    with pytest.raises(ExternalServiceError) as excinfo:
        await writer.write("a value=1")
    assert excinfo.value.service == "influx"

"""Serial frame decoding.

A frame is one JSON object sent by a microcontroller, e.g.::

    {"KEY_STATE": true, "MAIN_VOLTAGE_RAW": 512, "ACCELERATION": {"x": 0.1, "y": 0, "z": 9.8}}

Each member becomes one typed field. Decoding never raises; problems are
reported per field so the rest of the frame can still be applied.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from autohub._constants import MEASUREMENT_KEYS
from autohub._names import format_name
from autohub.ingestion.normalize import is_numeric


@dataclass(frozen=True)
class ScalarField:
    key: str
    value: str | int | float


@dataclass(frozen=True)
class MeasurementField:
    key: str
    x: float
    y: float
    z: float

    def axes(self) -> dict[str, float]:
        return {"X": self.x, "Y": self.y, "Z": self.z}


@dataclass(frozen=True)
class UnsupportedField:
    key: str
    reason: str


FrameField = ScalarField | MeasurementField | UnsupportedField


@dataclass(frozen=True)
class DecodedFrame:
    fields: list[FrameField] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def unsupported(self) -> list[UnsupportedField]:
        return [f for f in self.fields if isinstance(f, UnsupportedField)]


def _decode_measurement(key: str, value: dict[str, Any]) -> FrameField:
    axes = {str(k).upper(): v for k, v in value.items()}
    missing = [axis for axis in ("X", "Y", "Z") if not is_numeric(axes.get(axis))]
    if missing:
        return UnsupportedField(key, f"{key} measurement is missing numeric {', '.join(missing)}")
    return MeasurementField(key, float(axes["X"]), float(axes["Y"]), float(axes["Z"]))


def decode_member(key: str, value: Any) -> FrameField | None:
    """Decode one frame member. ``None`` values produce no field."""
    name = format_name(key)
    if value is None:
        return None
    if isinstance(value, bool):
        return ScalarField(name, "TRUE" if value else "FALSE")
    if isinstance(value, (int, float, str)):
        return ScalarField(name, value)
    if isinstance(value, dict):
        if name in MEASUREMENT_KEYS:
            return _decode_measurement(name, value)
        return UnsupportedField(name, f"{name} is an object I don't know how to handle")
    if isinstance(value, list):
        return UnsupportedField(name, f"{name} is an array. Data: {value!r}")
    return UnsupportedField(name, f"{name} is of a type I don't know how to handle ({type(value).__name__})")


def decode_frame(raw: bytes | str) -> DecodedFrame:
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    text = raw.strip()
    if not text:
        return DecodedFrame(errors=["empty frame"])
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        return DecodedFrame(errors=[f"unparseable frame {text!r}: {exc}"])
    if not isinstance(data, dict):
        return DecodedFrame(errors=[f"frame is not a JSON object: {text!r}"])

    fields: list[FrameField] = []
    errors: list[str] = []
    for key, value in data.items():
        decoded = decode_member(str(key), value)
        if decoded is None:
            continue
        fields.append(decoded)
        if isinstance(decoded, UnsupportedField):
            errors.append(decoded.reason)
    return DecodedFrame(fields=fields, errors=errors)

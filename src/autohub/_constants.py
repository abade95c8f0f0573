"""Internal constants shared across the library."""

DEFAULT_HTTP_PORT = 5353
DEFAULT_SERIAL_BAUD = 115200
MACHINE_SERVICE_PORT = 5350

#: Settings component holding hub-wide options.
HUB_COMPONENT = "MDROID"

#: Nested serial frame objects that decompose into ``<KEY>.X/.Y/.Z``.
MEASUREMENT_KEYS: frozenset[str] = frozenset({"ACCELERATION", "GYROSCOPE", "MAGNETIC"})

#: Power targets a module setting may hold.
TARGET_AUTO = "AUTO"
TARGET_ON = "ON"
TARGET_OFF = "OFF"

# ------------------------------------------------------------------
# Raw ADC conversions
# ------------------------------------------------------------------

_VOLTAGE_ADC_STEPS = 1024.0
_VOLTAGE_FULL_SCALE = 24.4

_CURRENT_ADC_STEPS = 4095.0
_CURRENT_REFERENCE_V = 3.3
_CURRENT_ZERO_OFFSET_V = 1.5
_CURRENT_SENSITIVITY_MV_PER_A = 185.0


def raw_to_voltage(raw: float) -> float:
    """Convert a 10-bit ADC reading of a voltage divider into volts."""
    return (raw / _VOLTAGE_ADC_STEPS) * _VOLTAGE_FULL_SCALE


def raw_to_current(raw: float) -> float:
    """Convert a 12-bit ADC reading of the hall current sensor into amps (absolute)."""
    volts = (raw * _CURRENT_REFERENCE_V) / _CURRENT_ADC_STEPS
    return abs(1000 * ((volts - _CURRENT_ZERO_OFFSET_V) / _CURRENT_SENSITIVITY_MV_PER_A))

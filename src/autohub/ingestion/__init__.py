"""Ingestion layer.

Adapters that turn raw frames read from the serial microcontrollers into
typed fields and apply them to the session table.
"""

__all__: list[str] = []

"""Apply decoded serial frames to the session table."""

from __future__ import annotations

import logging

from autohub.exceptions import InvalidNameError
from autohub.ingestion.frames import DecodedFrame, MeasurementField, ScalarField
from autohub.state.session import SessionStore

_logger = logging.getLogger(__name__)


def apply_frame(frame: DecodedFrame, session: SessionStore) -> list[str]:
    """Write every usable field of *frame* and return the problems found.

    Scalars are published remotely; measurement axes (``<KEY>.X`` etc.) are
    high-rate and stay local.
    """
    errors = list(frame.errors)
    for item in frame.fields:
        try:
            if isinstance(item, ScalarField):
                session.set(item.key, item.value, quiet=True, publish_remote=True)
            elif isinstance(item, MeasurementField):
                for axis, value in item.axes().items():
                    session.set(f"{item.key}.{axis}", value, quiet=True, publish_remote=False)
        except InvalidNameError as exc:
            errors.append(str(exc))
    for error in errors:
        _logger.error("Serial frame: %s", error)
    return errors

"""Descriptor <-> text conversion for storage in a text column."""
import json
import logging

import numpy as np

from config import DESCRIPTOR_LENGTH

logger = logging.getLogger(__name__)

# Everything json.loads or the float32 conversion can raise on bad stored text
DECODE_ERRORS = (TypeError, ValueError, OverflowError, RecursionError)


def encode(vector):
    """Serialize a descriptor as a JSON array of floats.

    float32 values widen exactly to Python floats, so the round trip is lossless.
    """
    values = np.asarray(vector, dtype=np.float32)
    return json.dumps([float(v) for v in values])


def _parse(text):
    values = json.loads(text)
    if not isinstance(values, list) or len(values) != DESCRIPTOR_LENGTH:
        raise ValueError(f"expected a list of {DESCRIPTOR_LENGTH} numbers")
    return np.array(values, dtype=np.float32)


def decode(text):
    """Parse a stored descriptor.

    Malformed or missing input yields a zero vector of DESCRIPTOR_LENGTH
    instead of raising, so one bad record cannot break a matching pass.
    """
    try:
        return _parse(text)
    except DECODE_ERRORS as e:
        logger.warning("Unreadable descriptor, using zero vector: %s", e)
        return np.zeros(DESCRIPTOR_LENGTH, dtype=np.float32)


def is_corrupt(text):
    """True when a non-empty stored descriptor would decode to the fallback."""
    if not text:
        return False
    try:
        _parse(text)
    except DECODE_ERRORS:
        return True
    return False

"""Descriptor comparison and best-match selection."""
import logging
from dataclasses import dataclass
from typing import Any, Iterable, Optional

import numpy as np

import descriptor_codec
from config import SIM_THRESHOLD

logger = logging.getLogger(__name__)


@dataclass
class Match:
    identity: Any
    similarity: float


def distance(a, b) -> float:
    """Euclidean distance between two equal-length descriptors"""
    a = np.asarray(a, dtype=np.float32)
    b = np.asarray(b, dtype=np.float32)
    if a.shape != b.shape:
        raise ValueError(f"Descriptor shapes differ: {a.shape} vs {b.shape}")
    return float(np.linalg.norm(a - b))


def similarity(a, b) -> float:
    """1 - distance. Not clamped: very different descriptors go negative."""
    return 1.0 - distance(a, b)


def best_match(probe, candidates: Iterable[Any], threshold: float = SIM_THRESHOLD) -> Optional[Match]:
    """Return the candidate most similar to probe, strictly above threshold.

    Candidates expose a ``descriptor`` string; those without one are skipped.
    Equal similarities keep the first candidate encountered.
    """
    best = None
    for candidate in candidates:
        stored = getattr(candidate, "descriptor", None)
        if not stored:
            continue
        score = similarity(probe, descriptor_codec.decode(stored))
        if score > threshold and (best is None or score > best.similarity):
            best = Match(identity=candidate, similarity=score)

    if best is not None:
        logger.debug("Best match %s (similarity %.3f)", getattr(best.identity, "id", None), best.similarity)
    return best

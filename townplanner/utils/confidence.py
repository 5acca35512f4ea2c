"""Confidence scoring for extracted metadata values.

Scores are always floats in [0.0, 1.0].  How a field's score is computed is
a pluggable :class:`ConfidenceScorer` strategy chosen in configuration:

- ``reported`` -- the model's own confidence, clamped (default).
- ``evidence`` -- the reported confidence blended with fuzzy evidence that
  the extracted value actually occurs in the document text.
- ``fixed``    -- a constant, for providers that never report confidence.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from townplanner.utils.errors import ConfigurationError
from townplanner.utils.text_normalizer import value_in_text


def clamp_confidence(value: object, default: float = 0.0) -> float:
    """Coerce *value* to a float clamped to [0.0, 1.0].

    Non-numeric input yields *default*; NaN is treated as non-numeric.
    """
    try:
        score = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default
    if score != score:
        return default
    return max(0.0, min(1.0, score))


def calculate_confidence(
    scores: list[float],
    weights: list[float] | None = None,
) -> float:
    """Compute a weighted average confidence score.

    Args:
        scores: Individual confidence scores, each in [0.0, 1.0].
        weights: Optional weights for each score. Defaults to equal weighting.

    Returns:
        Weighted average clamped to [0.0, 1.0].

    Raises:
        ValueError: If scores is empty or lengths of scores and weights differ.
    """
    if not scores:
        raise ValueError("scores must not be empty")

    if weights is None:
        weights = [1.0] * len(scores)

    if len(scores) != len(weights):
        raise ValueError("scores and weights must have the same length")

    total_weight = sum(weights)
    if total_weight == 0:
        return 0.0

    weighted_sum = sum(s * w for s, w in zip(scores, weights, strict=True))
    return max(0.0, min(1.0, weighted_sum / total_weight))


def mean_confidence(scores: list[float]) -> float:
    """Unweighted mean of *scores*; ``0.0`` for an empty list."""
    if not scores:
        return 0.0
    return calculate_confidence(scores)


class ConfidenceScorer(ABC):
    """Strategy that turns a model-reported confidence into a stored score."""

    name: str = ""

    @abstractmethod
    def score(self, reported: object, value: str, document_text: str) -> float:
        """Return the final confidence in [0.0, 1.0] for one extracted value."""


class ReportedConfidenceScorer(ConfidenceScorer):
    """Trust the model's reported confidence, clamped to [0, 1]."""

    name = "reported"

    def __init__(self, default: float = 0.5) -> None:
        self._default = clamp_confidence(default)

    def score(self, reported: object, value: str, document_text: str) -> float:
        return clamp_confidence(reported, default=self._default)


class EvidenceConfidenceScorer(ConfidenceScorer):
    """Blend the reported confidence with textual evidence for the value.

    A value the model claims but which cannot be found in the text is
    pulled down; a verbatim hit pulls the score up.
    """

    name = "evidence"

    def __init__(self, reported_weight: float = 1.0, evidence_weight: float = 1.0) -> None:
        self._weights = [reported_weight, evidence_weight]

    def score(self, reported: object, value: str, document_text: str) -> float:
        evidence = value_in_text(value, document_text)
        return calculate_confidence(
            [clamp_confidence(reported, default=0.5), evidence],
            self._weights,
        )


class FixedConfidenceScorer(ConfidenceScorer):
    """Assign the same confidence to every value."""

    name = "fixed"

    def __init__(self, value: float = 0.85) -> None:
        self._value = clamp_confidence(value)

    def score(self, reported: object, value: str, document_text: str) -> float:
        return self._value


_SCORERS: dict[str, type[ConfidenceScorer]] = {
    ReportedConfidenceScorer.name: ReportedConfidenceScorer,
    EvidenceConfidenceScorer.name: EvidenceConfidenceScorer,
    FixedConfidenceScorer.name: FixedConfidenceScorer,
}


def build_confidence_scorer(name: str) -> ConfidenceScorer:
    """Instantiate the scorer registered under *name*."""
    try:
        return _SCORERS[name]()
    except KeyError:
        raise ConfigurationError(
            f"Unknown confidence strategy '{name}'; expected one of {sorted(_SCORERS)}"
        ) from None

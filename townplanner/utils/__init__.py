"""Utility modules shared across the pipeline.

- **errors** -- exception hierarchy rooted at TownPlannerError, each class
  carrying a stable ``code`` persisted on failed units.
- **logging** -- structlog setup: coloured console output in development,
  structured JSON in production.
- **concurrency** -- bounded fan-out (``throttled_gather``) and per-call
  timeouts (``with_timeout``).
- **retry** -- bounded retry and polling policies with an injectable sleep.
- **confidence** -- score maths and pluggable confidence strategies.
- **text_normalizer** -- field-name normalization and rapidfuzz matching.
"""

from townplanner.utils.concurrency import throttled_gather, with_timeout
from townplanner.utils.confidence import (
    ConfidenceScorer,
    build_confidence_scorer,
    calculate_confidence,
    clamp_confidence,
)
from townplanner.utils.errors import TownPlannerError, error_payload
from townplanner.utils.logging import configure_logging, log_context
from townplanner.utils.retry import PollingPolicy, RetryPolicy
from townplanner.utils.text_normalizer import (
    find_near_duplicate,
    fuzzy_match,
    normalize_field_name,
)

__all__ = [
    "ConfidenceScorer",
    "PollingPolicy",
    "RetryPolicy",
    "TownPlannerError",
    "build_confidence_scorer",
    "calculate_confidence",
    "clamp_confidence",
    "configure_logging",
    "error_payload",
    "find_near_duplicate",
    "fuzzy_match",
    "log_context",
    "normalize_field_name",
    "throttled_gather",
    "with_timeout",
]

"""
Size classes: map a fish weight in grams to a discrete class.

Bands are contiguous and ordered by ascending lower bound. A weight belongs to
the last band whose lower bound it reaches, so a weight equal to a band's
displayed upper bound (99.99g) stays in that band and the next band starts at
its own lower bound (100g). The final band is open-ended.
"""

from __future__ import annotations

import logging
import math
from bisect import bisect_right
from dataclasses import dataclass
from typing import Iterable, Optional

from fishops.db import execute, q, transaction
from fishops.errors import OutOfRangeError, ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SizeBand:
    class_number: int
    min_weight_grams: float
    max_weight_grams: Optional[float] = None
    description: str = ""


DEFAULT_BANDS = [
    SizeBand(0, 0, 99.99, "Extra Small - Under 100g"),
    SizeBand(1, 100, 199.99, "Small - 100-200g"),
    SizeBand(2, 200, 299.99, "Medium Small - 200-300g"),
    SizeBand(3, 300, 499.99, "Medium - 300-500g"),
    SizeBand(4, 500, 799.99, "Medium Large - 500-800g"),
    SizeBand(5, 800, 1199.99, "Large - 800-1200g"),
    SizeBand(6, 1200, 1599.99, "Extra Large - 1200-1600g"),
    SizeBand(7, 1600, 1999.99, "Jumbo - 1600-2000g"),
    SizeBand(8, 2000, 2999.99, "Super Jumbo - 2000-3000g"),
    SizeBand(9, 3000, 4999.99, "Mega - 3000-5000g"),
    SizeBand(10, 5000, None, "Giant - Over 5000g"),
]


def _validate_bands(bands: list[SizeBand]) -> list[SizeBand]:
    if not bands:
        raise ValidationError("At least one size band is required.", entity="size_class_thresholds", operation="validate")

    ordered = sorted(bands, key=lambda b: float(b.min_weight_grams))
    if float(ordered[0].min_weight_grams) != 0.0:
        raise ValidationError("The lowest size band must start at 0g.", entity="size_class_thresholds", operation="validate")

    seen: set[int] = set()
    for prev, nxt in zip(ordered, ordered[1:]):
        if float(nxt.min_weight_grams) <= float(prev.min_weight_grams):
            raise ValidationError(
                f"Size bands {prev.class_number} and {nxt.class_number} share a lower bound.",
                entity="size_class_thresholds",
                entity_id=nxt.class_number,
                operation="validate",
            )
        if prev.max_weight_grams is None or float(prev.max_weight_grams) >= float(nxt.min_weight_grams):
            raise ValidationError(
                f"Size band {prev.class_number} overlaps band {nxt.class_number}.",
                entity="size_class_thresholds",
                entity_id=prev.class_number,
                operation="validate",
            )
        if int(nxt.class_number) <= int(prev.class_number):
            raise ValidationError(
                "Class numbers must ascend with weight.",
                entity="size_class_thresholds",
                entity_id=nxt.class_number,
                operation="validate",
            )

    for b in ordered:
        if int(b.class_number) in seen:
            raise ValidationError(f"Duplicate size class {b.class_number}.", entity="size_class_thresholds", operation="validate")
        seen.add(int(b.class_number))
        if b.max_weight_grams is not None and float(b.max_weight_grams) < float(b.min_weight_grams):
            raise ValidationError(
                f"Size band {b.class_number} has max below min.",
                entity="size_class_thresholds",
                entity_id=b.class_number,
                operation="validate",
            )

    # The top band is always open-ended.
    last = ordered[-1]
    ordered[-1] = SizeBand(last.class_number, last.min_weight_grams, None, last.description)
    return ordered


class SizeClassifier:
    def __init__(self, bands: Iterable[SizeBand] = DEFAULT_BANDS):
        self.bands = _validate_bands(list(bands))
        self._lower_bounds = [float(b.min_weight_grams) for b in self.bands]

    @property
    def classes(self) -> list[int]:
        return [int(b.class_number) for b in self.bands]

    def band_for(self, weight_grams: float) -> SizeBand:
        try:
            w = float(weight_grams)
        except (TypeError, ValueError):
            raise OutOfRangeError(f"Weight {weight_grams!r} is not a number.", entity="weight", operation="classify")
        if math.isnan(w) or w < 0:
            raise OutOfRangeError(f"Weight must be >= 0g, got {weight_grams!r}.", entity="weight", operation="classify")

        idx = bisect_right(self._lower_bounds, w) - 1
        return self.bands[idx]

    def classify(self, weight_grams: float) -> int:
        return int(self.band_for(weight_grams).class_number)

    def describe(self, size_class: int) -> str:
        for b in self.bands:
            if int(b.class_number) == int(size_class):
                return b.description or f"Size {size_class}"
        return f"Size {size_class}"


def list_thresholds(conn) -> list[SizeBand]:
    rows = q(
        conn,
        """
        SELECT class_number, min_weight_grams, max_weight_grams, description
        FROM size_class_thresholds
        ORDER BY min_weight_grams
        """,
    )
    return [
        SizeBand(
            int(r["class_number"]),
            float(r["min_weight_grams"]),
            float(r["max_weight_grams"]) if r["max_weight_grams"] is not None else None,
            str(r["description"] or ""),
        )
        for r in rows
    ]


def load_classifier(conn) -> SizeClassifier:
    bands = list_thresholds(conn)
    return SizeClassifier(bands if bands else DEFAULT_BANDS)


def replace_thresholds(conn, bands: Iterable[SizeBand]) -> SizeClassifier:
    """Swap the whole threshold table; partial edits would leave gaps or overlaps."""
    classifier = SizeClassifier(bands)

    with transaction(conn):
        execute(conn, "DELETE FROM size_class_thresholds")
        for b in classifier.bands:
            execute(
                conn,
                """
                INSERT INTO size_class_thresholds (class_number, min_weight_grams, max_weight_grams, description)
                VALUES (?, ?, ?, ?)
                """,
                (int(b.class_number), float(b.min_weight_grams), b.max_weight_grams, b.description or None),
            )

    logger.info("Replaced size thresholds with %d bands", len(classifier.bands))
    return classifier


def seed_default_thresholds(conn) -> None:
    if q(conn, "SELECT 1 FROM size_class_thresholds LIMIT 1"):
        return
    replace_thresholds(conn, DEFAULT_BANDS)

"""
Size class bands: boundary inclusion, validation, and the persisted table.
"""
import math

import pytest

from fishops.errors import OutOfRangeError, ValidationError
from fishops.services.sizing import (
    DEFAULT_BANDS,
    SizeBand,
    SizeClassifier,
    list_thresholds,
    load_classifier,
    replace_thresholds,
)


@pytest.fixture
def classifier():
    return SizeClassifier(DEFAULT_BANDS)


@pytest.mark.parametrize(
    "weight, expected",
    [
        (0, 0),
        (99.99, 0),
        (100, 1),
        (199.99, 1),
        (200, 2),
        (499.99, 3),
        (500, 4),
        (4999.99, 9),
        (5000, 10),
        (250000, 10),
    ],
)
def test_boundaries_fall_into_lower_band(classifier, weight, expected):
    assert classifier.classify(weight) == expected


@pytest.mark.parametrize("w1, w2", [(0.5, 99.0), (100, 150.5), (300, 499.99), (5000, 12000)])
def test_weights_in_same_band_share_a_class(classifier, w1, w2):
    assert classifier.classify(w1) == classifier.classify(w2)


def test_gap_between_displayed_upper_and_next_lower_stays_in_lower_band(classifier):
    assert classifier.classify(99.995) == 0


@pytest.mark.parametrize("bad", [-0.01, -100, math.nan, "heavy", None])
def test_invalid_weights_raise_out_of_range(classifier, bad):
    with pytest.raises(OutOfRangeError):
        classifier.classify(bad)


def test_out_of_range_is_a_validation_error(classifier):
    with pytest.raises(ValidationError):
        classifier.classify(-1)


def test_overlapping_bands_are_rejected():
    with pytest.raises(ValidationError):
        SizeClassifier([SizeBand(0, 0, 150), SizeBand(1, 100, None)])


def test_bands_must_start_at_zero():
    with pytest.raises(ValidationError):
        SizeClassifier([SizeBand(0, 10, 99.99), SizeBand(1, 100, None)])


def test_top_band_is_always_open_ended():
    c = SizeClassifier([SizeBand(0, 0, 99.99), SizeBand(1, 100, 199.99)])
    assert c.bands[-1].max_weight_grams is None
    assert c.classify(10_000) == 1


def test_default_thresholds_are_seeded(conn):
    bands = list_thresholds(conn)
    assert [b.class_number for b in bands] == list(range(11))
    assert bands[-1].max_weight_grams is None
    assert load_classifier(conn).classify(100) == 1


def test_replace_thresholds_persists_new_bands(conn):
    replace_thresholds(
        conn,
        [SizeBand(0, 0, 499.99, "small"), SizeBand(1, 500, 999.99, "medium"), SizeBand(2, 1000, None, "large")],
    )
    c = load_classifier(conn)
    assert c.classes == [0, 1, 2]
    assert c.classify(750) == 1
    assert c.classify(1000) == 2
    assert c.describe(2) == "large"


def test_invalid_replacement_keeps_existing_bands(conn):
    with pytest.raises(ValidationError):
        replace_thresholds(conn, [SizeBand(0, 0, 300), SizeBand(1, 200, None)])
    assert len(list_thresholds(conn)) == 11

"""Tests for ratio-test matching."""

import numpy as np

from stereo_lc.matching import match_percentage, ratio_matching

from conftest import random_descriptors


class TestRatioMatching:
    """Test suite for ratio_matching."""

    def test_identical_sets(self, rng):
        """Test that identical binary sets match row to row."""
        descriptors = random_descriptors(rng, 30)

        matches = ratio_matching(descriptors, descriptors.copy())

        assert len(matches) == 30
        assert all(m.queryIdx == m.trainIdx for m in matches)

    def test_at_most_one_match_per_query(self, rng):
        """Test that each query row appears at most once."""
        query = random_descriptors(rng, 20)
        train = np.vstack([query[:10], random_descriptors(rng, 30)])

        matches = ratio_matching(query, train)

        query_ids = [m.queryIdx for m in matches]
        assert len(query_ids) == len(set(query_ids))
        assert {m.queryIdx for m in matches} >= set(range(10))

    def test_ambiguous_matches_rejected(self, rng):
        """Test that a query with two equal candidates is rejected."""
        row = random_descriptors(rng, 1)
        train = np.vstack([row, row, random_descriptors(rng, 5)])

        assert ratio_matching(row, train) == []

    def test_float_descriptors(self, rng):
        """Test L2 matching of float descriptors."""
        train = rng.normal(size=(20, 64)).astype(np.float32)
        query = train[:5] + 0.01

        matches = ratio_matching(query, train)

        assert [m.trainIdx for m in matches] == [0, 1, 2, 3, 4]

    def test_too_few_train_rows(self, rng):
        """Test that k=2 matching needs two train rows."""
        assert ratio_matching(random_descriptors(rng, 5), random_descriptors(rng, 1)) == []
        assert ratio_matching(np.zeros((0, 32), dtype=np.uint8), random_descriptors(rng, 5)) == []

    def test_dimension_mismatch(self, rng):
        """Test that descriptors of different length don't match."""
        assert ratio_matching(random_descriptors(rng, 5, 32), random_descriptors(rng, 5, 16)) == []


class TestMatchPercentage:
    """Test suite for match_percentage."""

    def test_relative_to_smaller_set(self):
        """Test percentage against the smaller descriptor set."""
        assert match_percentage(10, 20, 100) == 50

    def test_rounding(self):
        """Test rounding to the nearest integer."""
        assert match_percentage(1, 3, 3) == 33
        assert match_percentage(2, 3, 3) == 67

    def test_clamped(self):
        """Test that the percentage never exceeds 100."""
        assert match_percentage(30, 10, 40) == 100

    def test_empty_set(self):
        """Test that an empty set gives 0."""
        assert match_percentage(0, 0, 10) == 0

"""Ratio-test descriptor matching."""

from __future__ import annotations

import cv2
import numpy as np


def ratio_matching(
    query_descriptors: np.ndarray,
    train_descriptors: np.ndarray,
    ratio_threshold: float = 0.8,
) -> list[cv2.DMatch]:
    """Match descriptors with Lowe's ratio test.

    A query row keeps its best match only if the best distance is below
    ``ratio_threshold`` times the second-best distance. Binary (uint8)
    descriptors are compared with Hamming distance, others with L2.

    Args:
        query_descriptors: Query descriptors (N, D)
        train_descriptors: Train descriptors (M, D)
        ratio_threshold: Ratio test threshold

    Returns:
        Matches with ``queryIdx`` into the query set and ``trainIdx`` into
        the train set; at most one per query row
    """
    if len(query_descriptors) < 1 or len(train_descriptors) < 2:
        return []

    if query_descriptors.dtype == np.uint8 and train_descriptors.dtype == np.uint8:
        matcher = cv2.BFMatcher(cv2.NORM_HAMMING, crossCheck=False)
        query = np.ascontiguousarray(query_descriptors)
        train = np.ascontiguousarray(train_descriptors)
    else:
        matcher = cv2.BFMatcher(cv2.NORM_L2, crossCheck=False)
        query = np.ascontiguousarray(query_descriptors, dtype=np.float32)
        train = np.ascontiguousarray(train_descriptors, dtype=np.float32)

    if query.shape[1] != train.shape[1]:
        return []

    try:
        knn_matches = matcher.knnMatch(query, train, k=2)
    except cv2.error:
        return []

    good_matches = []
    for match_pair in knn_matches:
        if len(match_pair) == 2:
            m, n = match_pair
            if m.distance < ratio_threshold * n.distance:
                good_matches.append(m)

    return good_matches


def match_percentage(num_matches: int, size_a: int, size_b: int) -> int:
    """Percentage of matches relative to the smaller descriptor set.

    Rounded to the nearest integer and clamped to [0, 100]; 0 if either
    set is empty.
    """
    smallest = min(size_a, size_b)
    if smallest <= 0:
        return 0
    return min(100, int(round(100.0 * num_matches / smallest)))

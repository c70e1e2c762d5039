"""Shared fixtures for loop closing tests."""

from __future__ import annotations

import numpy as np
import pytest

from stereo_lc.cluster import Cluster
from stereo_lc.graph import CameraModel
from stereo_lc.pose import SE3
from stereo_lc.pose_estimation import PnPEstimate
from stereo_lc.pose_graph import PoseGraph


class FixedEstimator:
    """Pose estimator returning a preset set of inlier indices."""

    def __init__(self, inliers, transform: SE3 | None = None):
        self.inliers = np.asarray(inliers, dtype=np.int64)
        self.transform = transform or SE3.identity()
        self.calls = 0

    def estimate(self, points_3d, points_2d, camera_matrix):
        self.calls += 1
        rvec, tvec = self.transform.to_rvec_tvec()
        return PnPEstimate(rvec=rvec, tvec=tvec, inliers=self.inliers)


def random_descriptors(rng: np.random.Generator, n: int, n_bytes: int = 32) -> np.ndarray:
    """Random binary descriptors (ORB-like, 256 bits)."""
    return rng.integers(0, 256, size=(n, n_bytes), dtype=np.uint8)


def scene_points(rng: np.random.Generator, n: int) -> np.ndarray:
    """Points in front of a camera at the origin looking down +z."""
    return np.column_stack(
        [
            rng.uniform(-2.0, 2.0, n),
            rng.uniform(-1.5, 1.5, n),
            rng.uniform(4.0, 8.0, n),
        ]
    )


def make_cluster(
    cluster_id: int,
    frame_id: int,
    descriptors: np.ndarray,
    world_points: np.ndarray | None = None,
    keypoints: np.ndarray | None = None,
    camera_pose: SE3 | None = None,
) -> Cluster:
    """Build a cluster, filling keypoints with a grid if not given."""
    n = len(descriptors)
    if keypoints is None:
        keypoints = np.column_stack([np.arange(n) * 10.0 % 640, np.arange(n) * 7.0 % 480])
    if world_points is None:
        world_points = np.zeros((0, 3))
    return Cluster(
        id=cluster_id,
        frame_id=frame_id,
        keypoints=keypoints,
        descriptors=descriptors,
        world_points=world_points,
        camera_pose=camera_pose,
    )


@pytest.fixture
def rng() -> np.random.Generator:
    """Seeded random generator."""
    return np.random.default_rng(42)


@pytest.fixture
def camera_model() -> CameraModel:
    """640x480 pinhole camera."""
    return CameraModel(fx=400.0, fy=400.0, cx=320.0, cy=240.0, width=640, height=480)


@pytest.fixture
def pose_graph(camera_model: CameraModel) -> PoseGraph:
    """Empty pose graph."""
    return PoseGraph(camera_model)

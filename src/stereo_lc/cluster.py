"""Clusters: the unit of loop-closure input."""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np

from .pose import SE3


@dataclass(frozen=True, eq=False)
class Cluster:
    """One structural vertex's worth of features.

    A cluster with zero descriptor rows is the "empty" sentinel returned on
    store misses; every consumer skips it.

    Attributes:
        id: Cluster ID, also the structural vertex ID in the pose graph
        frame_id: ID of the source keyframe (several clusters may share it)
        keypoints: 2D keypoint locations (N, 2)
        descriptors: Local descriptors (N, D), row-aligned with keypoints
        world_points: 3D points in the world frame (N, 3), may be empty
        camera_pose: Camera pose T_world_camera at capture time
    """

    id: int
    frame_id: int
    keypoints: np.ndarray  # (N, 2) float32
    descriptors: np.ndarray  # (N, D) uint8 or float32
    world_points: np.ndarray  # (N, 3) float32
    camera_pose: SE3 | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        # Frozen dataclass: normalize through object.__setattr__
        keypoints = np.asarray(self.keypoints, dtype=np.float32).reshape(-1, 2)
        descriptors = np.asarray(self.descriptors)
        if descriptors.ndim == 1:
            descriptors = descriptors.reshape(1, -1) if descriptors.size else descriptors.reshape(0, 0)
        world_points = np.asarray(self.world_points, dtype=np.float32).reshape(-1, 3)

        object.__setattr__(self, "keypoints", keypoints)
        object.__setattr__(self, "descriptors", descriptors)
        object.__setattr__(self, "world_points", world_points)

        n = len(descriptors)
        if n > 0 and len(keypoints) != n:
            raise ValueError(
                f"Cluster {self.id}: {len(keypoints)} keypoints for {n} descriptors"
            )
        if len(world_points) > 0 and len(world_points) != n:
            raise ValueError(
                f"Cluster {self.id}: {len(world_points)} world points for {n} descriptors"
            )

    @classmethod
    def empty(cls, cluster_id: int = -1) -> Cluster:
        """Return the empty sentinel for ``cluster_id``."""
        return cls(
            id=cluster_id,
            frame_id=-1,
            keypoints=np.zeros((0, 2), dtype=np.float32),
            descriptors=np.zeros((0, 0), dtype=np.uint8),
            world_points=np.zeros((0, 3), dtype=np.float32),
        )

    @property
    def is_empty(self) -> bool:
        """True if the cluster has no descriptors."""
        return len(self.descriptors) == 0

    @property
    def has_world_points(self) -> bool:
        """True if every descriptor row has a triangulated 3D point."""
        return not self.is_empty and len(self.world_points) == len(self.descriptors)

    def __len__(self) -> int:
        return len(self.descriptors)

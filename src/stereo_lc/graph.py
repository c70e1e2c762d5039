"""Boundary between loop closing and the pose graph that owns the vertices.

Loop closing never sees optimizer internals. It reads vertex poses and
topology through the narrow ``Graph`` protocol and writes loop constraints
through ``add_edge``. The owner of the graph serializes its optimization
passes against these calls.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable

import numpy as np

from .pose import SE3


@dataclass
class CameraModel:
    """Pinhole camera of rectified images.

    Attributes:
        fx: Focal length x (pixels)
        fy: Focal length y (pixels)
        cx: Principal point x (pixels)
        cy: Principal point y (pixels)
        width: Image width (pixels)
        height: Image height (pixels)
    """

    fx: float
    fy: float
    cx: float
    cy: float
    width: int
    height: int

    def to_matrix(self) -> np.ndarray:
        """Return 3x3 camera intrinsic matrix K."""
        return np.array(
            [[self.fx, 0.0, self.cx], [0.0, self.fy, self.cy], [0.0, 0.0, 1.0]],
            dtype=np.float64,
        )

    @property
    def resolution(self) -> tuple[int, int]:
        """Image size as (width, height)."""
        return self.width, self.height

    def project(self, points_camera: np.ndarray) -> np.ndarray:
        """Project (N, 3) camera-frame points to (N, 2) pixels."""
        points = np.asarray(points_camera, dtype=np.float64).reshape(-1, 3)
        z = points[:, 2]
        u = self.fx * points[:, 0] / z + self.cx
        v = self.fy * points[:, 1] / z + self.cy
        return np.column_stack([u, v])

    def in_frustum(self, points_world: np.ndarray, camera_pose: SE3) -> np.ndarray:
        """Boolean mask of world points that project inside the image.

        Args:
            points_world: (N, 3) points in the world frame
            camera_pose: Camera pose T_world_camera

        Returns:
            (N,) mask; points behind the camera are outside
        """
        points_camera = camera_pose.inverse().transform_points(points_world)
        in_front = points_camera[:, 2] > 0.0
        mask = np.zeros(len(points_camera), dtype=bool)
        if not np.any(in_front):
            return mask
        pixels = self.project(points_camera[in_front])
        inside = (
            (pixels[:, 0] >= 0.0)
            & (pixels[:, 0] <= self.width)
            & (pixels[:, 1] >= 0.0)
            & (pixels[:, 1] <= self.height)
        )
        mask[np.flatnonzero(in_front)[inside]] = True
        return mask


@runtime_checkable
class Graph(Protocol):
    """Operations loop closing needs from the pose graph."""

    def get_camera_model(self) -> CameraModel: ...

    def get_camera_matrix(self) -> np.ndarray: ...

    def find_closest_vertices(
        self,
        vertex_id: int,
        exclude_id: int,
        discard_window: int,
        k: int,
    ) -> list[int]:
        """Up to ``k`` vertices closest to ``vertex_id``.

        Never returns ``vertex_id`` itself nor any id in the open interval
        ``(exclude_id - discard_window, exclude_id + discard_window)``.
        """
        ...

    def get_frame_vertices(self, frame_id: int) -> list[int]: ...

    def get_vertex_frame_id(self, vertex_id: int) -> int: ...

    def get_vertex_pose(self, vertex_id: int) -> SE3:
        """Vertex pose T_world_vertex."""
        ...

    def get_vertex_pose_relative_to_camera(self, vertex_id: int) -> SE3:
        """Vertex pose relative to its camera, T_camera_vertex."""
        ...

    def get_vertex_camera_pose(self, vertex_id: int) -> SE3:
        """Pose T_world_camera of the camera that observed the vertex."""
        ...

    def get_frame_num(self) -> int: ...

    def add_edge(
        self,
        from_vertex: int,
        to_vertex: int,
        transform: SE3,
        weight: int,
    ) -> None: ...

    def update(self) -> None: ...

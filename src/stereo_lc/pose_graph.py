"""In-memory pose graph implementing the ``Graph`` protocol.

Stores structural vertices (one per cluster) grouped by keyframe, and the
edges added between them. It does not optimize; it stands in for the
external graph owner when running loop closing standalone.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Callable

import numpy as np

from .graph import CameraModel
from .pose import SE3


@dataclass
class PoseVertex:
    """A structural vertex.

    Attributes:
        id: Vertex ID (equal to the cluster ID)
        frame_id: Keyframe the vertex belongs to
        pose: Vertex pose T_world_vertex
        camera_pose: Pose T_world_camera of the keyframe camera
    """

    id: int
    frame_id: int
    pose: SE3
    camera_pose: SE3


@dataclass
class PoseEdge:
    """An edge in the pose graph.

    Attributes:
        from_id: Source vertex ID
        to_id: Target vertex ID
        measurement: Measured relative transform T_from_to
        weight: Edge weight (number of supporting inliers for loop edges)
        is_loop: Whether this is a loop closure edge
    """

    from_id: int
    to_id: int
    measurement: SE3
    weight: int = 1
    is_loop: bool = False


class PoseGraph:
    """Vertices, odometry edges and loop edges of a stereo SLAM run."""

    def __init__(self, camera_model: CameraModel) -> None:
        """Initialize empty pose graph.

        Args:
            camera_model: Camera of the rectified left images
        """
        self._camera_model = camera_model
        self._vertices: dict[int, PoseVertex] = {}
        self._frames: dict[int, list[int]] = {}
        self._odometry_edges: list[PoseEdge] = []
        self._loop_edges: list[PoseEdge] = []
        self._update_listeners: list[Callable[[], None]] = []
        self._num_updates = 0

        # Reads and writes from loop closing must not interleave with an
        # optimization pass; the owner holds this lock while optimizing
        self.lock = threading.RLock()

    def add_vertex(
        self,
        vertex_id: int,
        frame_id: int,
        camera_pose: SE3,
        pose: SE3 | None = None,
    ) -> None:
        """Add a structural vertex.

        Args:
            vertex_id: Unique vertex ID
            frame_id: Keyframe ID
            camera_pose: Camera pose T_world_camera
            pose: Vertex pose T_world_vertex (defaults to the camera pose)
        """
        with self.lock:
            if vertex_id in self._vertices:
                raise ValueError(f"Vertex {vertex_id} already exists")
            self._vertices[vertex_id] = PoseVertex(
                id=vertex_id,
                frame_id=frame_id,
                pose=camera_pose if pose is None else pose,
                camera_pose=camera_pose,
            )
            self._frames.setdefault(frame_id, []).append(vertex_id)

    def add_odometry_edge(self, from_id: int, to_id: int) -> None:
        """Add an edge measuring the current relative pose of two vertices."""
        with self.lock:
            measurement = self._vertex(from_id).pose.inverse() @ self._vertex(to_id).pose
            self._odometry_edges.append(
                PoseEdge(from_id=from_id, to_id=to_id, measurement=measurement)
            )

    def add_update_listener(self, listener: Callable[[], None]) -> None:
        """Register a callable invoked on every ``update()``."""
        self._update_listeners.append(listener)

    # Graph protocol

    def get_camera_model(self) -> CameraModel:
        return self._camera_model

    def get_camera_matrix(self) -> np.ndarray:
        return self._camera_model.to_matrix()

    def find_closest_vertices(
        self,
        vertex_id: int,
        exclude_id: int,
        discard_window: int,
        k: int,
    ) -> list[int]:
        """Up to ``k`` vertices nearest to ``vertex_id`` by position.

        Skips ``vertex_id`` itself and every id strictly within
        ``discard_window`` of ``exclude_id``. Ties keep insertion order.
        """
        with self.lock:
            if vertex_id not in self._vertices or k <= 0:
                return []

            origin = self._vertices[vertex_id].pose.translation
            ids = [
                vid
                for vid in self._vertices
                if vid != vertex_id
                and not (exclude_id - discard_window < vid < exclude_id + discard_window)
            ]
            if not ids:
                return []

            positions = np.array([self._vertices[vid].pose.translation for vid in ids])
            distances = np.linalg.norm(positions - origin, axis=1)
            order = np.argsort(distances, kind="stable")[:k]
            return [ids[i] for i in order]

    def get_frame_vertices(self, frame_id: int) -> list[int]:
        with self.lock:
            return list(self._frames.get(frame_id, []))

    def get_vertex_frame_id(self, vertex_id: int) -> int:
        with self.lock:
            return self._vertex(vertex_id).frame_id

    def get_vertex_pose(self, vertex_id: int) -> SE3:
        with self.lock:
            return self._vertex(vertex_id).pose

    def get_vertex_pose_relative_to_camera(self, vertex_id: int) -> SE3:
        with self.lock:
            vertex = self._vertex(vertex_id)
            return vertex.camera_pose.inverse() @ vertex.pose

    def get_vertex_camera_pose(self, vertex_id: int) -> SE3:
        with self.lock:
            return self._vertex(vertex_id).camera_pose

    def get_frame_num(self) -> int:
        with self.lock:
            return len(self._frames)

    def add_edge(
        self,
        from_vertex: int,
        to_vertex: int,
        transform: SE3,
        weight: int,
    ) -> None:
        with self.lock:
            self._vertex(from_vertex)
            self._vertex(to_vertex)
            self._loop_edges.append(
                PoseEdge(
                    from_id=from_vertex,
                    to_id=to_vertex,
                    measurement=transform,
                    weight=int(weight),
                    is_loop=True,
                )
            )

    def update(self) -> None:
        self._num_updates += 1
        for listener in self._update_listeners:
            listener()

    def _vertex(self, vertex_id: int) -> PoseVertex:
        vertex = self._vertices.get(vertex_id)
        if vertex is None:
            raise KeyError(f"Unknown vertex {vertex_id}")
        return vertex

    @property
    def num_vertices(self) -> int:
        """Number of vertices in graph."""
        return len(self._vertices)

    @property
    def num_edges(self) -> int:
        """Total number of edges in graph."""
        return len(self._odometry_edges) + len(self._loop_edges)

    @property
    def num_loop_edges(self) -> int:
        """Number of loop closure edges."""
        return len(self._loop_edges)

    @property
    def loop_edges(self) -> list[PoseEdge]:
        """Loop closure edges in insertion order."""
        with self.lock:
            return list(self._loop_edges)

    @property
    def num_updates(self) -> int:
        """Number of ``update()`` calls received."""
        return self._num_updates

"""Insertion of verified loop closures into the pose graph."""

from __future__ import annotations

from dataclasses import dataclass

from .candidate_search import LoopClosureRecords
from .geometric_verification import VerificationResult
from .graph import Graph
from .pose import SE3


@dataclass
class LoopEdge:
    """A loop closure edge added to the graph.

    Attributes:
        from_id: Candidate vertex ID
        to_id: Current vertex ID
        transform: Edge transform T_candidate_current
        weight: Number of supporting inliers
    """

    from_id: int
    to_id: int
    transform: SE3
    weight: int


def compute_edge_transform(
    candidate_pose: SE3,
    estimated_transform: SE3,
    current_pose_relative_to_camera: SE3,
) -> SE3:
    """Edge transform between a candidate vertex and a current vertex.

    ``T_world_candidate^-1 @ T_world_camera @ T_camera_current``, where the
    camera pose in the world comes from the inverted PnP estimate (the
    candidate 3D points are in the world frame).
    """
    return candidate_pose.inverse() @ estimated_transform @ current_pose_relative_to_camera


class EdgeInserter:
    """Adds one edge per surviving structural pair and records it."""

    def __init__(
        self,
        graph: Graph,
        records: LoopClosureRecords,
        verbose: bool = False,
    ) -> None:
        """Initialize edge inserter.

        Args:
            graph: Pose graph receiving the edges
            records: Blacklist of pairs already closed
            verbose: Print the odometry and loop edge translations
        """
        self._graph = graph
        self._records = records
        self._verbose = verbose

    def insert(self, result: VerificationResult) -> list[LoopEdge]:
        """Add the edges of a valid verification.

        Pairs already recorded are skipped. ``Graph.update()`` is called
        once per valid result.

        Args:
            result: Valid verification result

        Returns:
            Edges added to the graph
        """
        if not result.is_valid or result.estimated_transform is None:
            return []

        edges = []
        for (current_vertex, candidate_vertex), weight in result.pair_inliers.items():
            if self._records.contains(current_vertex, candidate_vertex):
                if self._verbose:
                    print(
                        f"[LoopClosing] Edge {candidate_vertex} <-> {current_vertex} "
                        "already closed, skipped"
                    )
                continue

            try:
                candidate_pose = self._graph.get_vertex_pose(candidate_vertex)
                current_pose = self._graph.get_vertex_pose(current_vertex)
                transform = compute_edge_transform(
                    candidate_pose,
                    result.estimated_transform,
                    self._graph.get_vertex_pose_relative_to_camera(current_vertex),
                )
                self._graph.add_edge(candidate_vertex, current_vertex, transform, weight)
            except KeyError as e:
                print(
                    f"[LoopClosing] Edge {candidate_vertex} <-> {current_vertex} "
                    f"skipped: {e}"
                )
                continue

            if self._verbose:
                odometry = candidate_pose.inverse() @ current_pose
                print(f"[LoopClosing] INITIAL EDGE: {_format_xyz(odometry.translation)}")
                print(f"[LoopClosing] FINAL EDGE: {_format_xyz(transform.translation)}")

            self._records.add(current_vertex, candidate_vertex)
            edges.append(
                LoopEdge(
                    from_id=candidate_vertex,
                    to_id=current_vertex,
                    transform=transform,
                    weight=weight,
                )
            )

        self._graph.update()
        return edges


def _format_xyz(xyz) -> str:
    return f"{xyz[0]:.3f}, {xyz[1]:.3f}, {xyz[2]:.3f}"

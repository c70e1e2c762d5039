"""Geometric verification of loop closure candidates.

A candidate proposed by place recognition or graph proximity becomes a
loop closure only if the two places are geometrically consistent:

1. Cheap gate: ratio-test matching between the two clusters must cover
   more than a minimum percentage of the smaller descriptor set
2. Aggregation: the candidate is enlarged with its structural neighbors
   and the current cluster with the other clusters of its keyframe, every
   row tagged with the vertex it came from
3. Full ratio-test matching between the two enlarged pools
4. RANSAC PnP of the candidate pool's 3D points against the current
   pool's keypoints
5. Inliers vote for (current vertex, candidate vertex) pairs; pairs with
   enough votes become loop edges

Every stage reports failure through the result; nothing is raised.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable

import numpy as np

from .cluster import Cluster
from .graph import Graph
from .matching import match_percentage, ratio_matching
from .pose import SE3
from .pose_estimation import PoseEstimator, RansacPnP


@dataclass
class FeaturePool:
    """Concatenated features of several clusters.

    Attributes:
        descriptors: Stacked descriptors (N, D)
        keypoints: Stacked keypoints (N, 2)
        world_points: Stacked 3D points (N, 3), empty for pools that
            don't need them
        vertex_ids: Vertex each row came from (N,)
    """

    descriptors: np.ndarray
    keypoints: np.ndarray
    world_points: np.ndarray
    vertex_ids: np.ndarray

    @classmethod
    def from_clusters(cls, clusters: list[Cluster], with_points: bool) -> FeaturePool:
        """Stack clusters that share the first cluster's descriptor layout.

        Args:
            clusters: Clusters to stack, seed cluster first
            with_points: Also stack world points; clusters without a 3D
                point per row are skipped

        Returns:
            The pool (possibly empty)
        """
        usable = [
            c
            for c in clusters
            if not c.is_empty and (c.has_world_points or not with_points)
        ]
        if usable:
            reference = usable[0].descriptors
            usable = [
                c
                for c in usable
                if c.descriptors.shape[1] == reference.shape[1]
                and c.descriptors.dtype == reference.dtype
            ]
        if not usable:
            return cls.empty()

        return cls(
            descriptors=np.vstack([c.descriptors for c in usable]),
            keypoints=np.vstack([c.keypoints for c in usable]),
            world_points=(
                np.vstack([c.world_points for c in usable])
                if with_points
                else np.zeros((0, 3), dtype=np.float32)
            ),
            vertex_ids=np.concatenate(
                [np.full(len(c), c.id, dtype=np.int64) for c in usable]
            ),
        )

    @classmethod
    def empty(cls) -> FeaturePool:
        """Pool with no rows."""
        return cls(
            descriptors=np.zeros((0, 0), dtype=np.uint8),
            keypoints=np.zeros((0, 2), dtype=np.float32),
            world_points=np.zeros((0, 3), dtype=np.float32),
            vertex_ids=np.zeros(0, dtype=np.int64),
        )

    def select(self, mask: np.ndarray) -> FeaturePool:
        """Rows where ``mask`` is True."""
        return FeaturePool(
            descriptors=self.descriptors[mask],
            keypoints=self.keypoints[mask],
            world_points=self.world_points[mask] if len(self.world_points) else self.world_points,
            vertex_ids=self.vertex_ids[mask],
        )

    def __len__(self) -> int:
        return len(self.vertex_ids)


@dataclass
class VerificationResult:
    """Result of geometric verification.

    Attributes:
        is_valid: Whether a loop closure was found
        current_id: ID of the current cluster
        candidate_id: ID of the candidate cluster
        reason: Why verification stopped (empty if valid)
        match_percentage: Stage 1 match percentage
        num_matches: Raw matches between the aggregated pools
        num_inliers: PnP inliers
        estimated_transform: Inverted PnP output, T_points_camera
        pair_inliers: Inlier votes of surviving (current vertex,
            candidate vertex) pairs, in first-seen order
        current_points: Current-pool keypoints of every match (M, 2)
        candidate_points: Candidate-pool keypoints of every match (M, 2)
        current_vertices: Current vertex of every match (M,)
        candidate_vertices: Candidate vertex of every match (M,)
        inliers: Indices into the matches of the PnP inliers
        candidate_keyframes: Keyframes of the candidate vertices among the
            inliers, in first-seen order
        vertex_keyframes: Keyframe of each candidate vertex among the inliers
    """

    is_valid: bool
    current_id: int = -1
    candidate_id: int = -1
    reason: str = ""
    match_percentage: int = 0
    num_matches: int = 0
    num_inliers: int = 0
    estimated_transform: SE3 | None = None
    pair_inliers: dict[tuple[int, int], int] = field(default_factory=dict)
    current_points: np.ndarray = field(
        default_factory=lambda: np.zeros((0, 2), dtype=np.float32)
    )
    candidate_points: np.ndarray = field(
        default_factory=lambda: np.zeros((0, 2), dtype=np.float32)
    )
    current_vertices: np.ndarray = field(
        default_factory=lambda: np.zeros(0, dtype=np.int64)
    )
    candidate_vertices: np.ndarray = field(
        default_factory=lambda: np.zeros(0, dtype=np.int64)
    )
    inliers: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.int64))
    candidate_keyframes: list[int] = field(default_factory=list)
    vertex_keyframes: dict[int, int] = field(default_factory=dict)


class GeometricVerifier:
    """Decides whether a candidate cluster closes a loop with the current one."""

    def __init__(
        self,
        graph: Graph,
        load_cluster: Callable[[int], Cluster],
        pose_estimator: PoseEstimator | None = None,
        discard_window: int = 20,
        candidate_neighbors: int = 5,
        min_inliers: int = 20,
        ratio_threshold: float = 0.8,
        match_percentage_gate: float = 35.0,
        min_pair_inliers: int = 5,
        filter_by_frustum: bool = False,
        verbose: bool = False,
    ) -> None:
        """Initialize geometric verifier.

        Args:
            graph: Pose graph (topology, intrinsics, vertex frames)
            load_cluster: Reads a cluster by ID, returning the empty
                sentinel on a miss
            pose_estimator: RANSAC PnP (default: RansacPnP with 100
                iterations and a 5 px threshold)
            discard_window: Window excluded when collecting candidate
                neighbors
            candidate_neighbors: Neighbors aggregated into the candidate pool
            min_inliers: Minimum raw matches and PnP inliers
            ratio_threshold: Lowe's ratio test threshold
            match_percentage_gate: Stage 1 passes only above this percentage
            min_pair_inliers: Votes a structural pair needs to survive
            filter_by_frustum: Drop candidate rows outside the current
                camera frustum
            verbose: Print match/inlier counts
        """
        self._graph = graph
        self._load_cluster = load_cluster
        self._pose_estimator = pose_estimator or RansacPnP()
        self._discard_window = discard_window
        self._candidate_neighbors = candidate_neighbors
        self._min_inliers = min_inliers
        self._ratio_threshold = ratio_threshold
        self._match_percentage_gate = match_percentage_gate
        self._min_pair_inliers = min_pair_inliers
        self._filter_by_frustum = filter_by_frustum
        self._verbose = verbose

    def verify(self, current: Cluster, candidate: Cluster) -> VerificationResult:
        """Verify a loop closure candidate geometrically.

        Args:
            current: Freshly stored cluster
            candidate: Candidate cluster

        Returns:
            VerificationResult; valid results carry the surviving
            structural pairs and the estimated transform
        """
        result = VerificationResult(
            is_valid=False, current_id=current.id, candidate_id=candidate.id
        )
        if current.is_empty or candidate.is_empty:
            result.reason = "empty cluster"
            return result

        # Stage 1: cheap gate
        matches = ratio_matching(
            current.descriptors, candidate.descriptors, self._ratio_threshold
        )
        result.match_percentage = match_percentage(
            len(matches), len(current.descriptors), len(candidate.descriptors)
        )
        if result.match_percentage <= self._match_percentage_gate:
            result.reason = "match percentage"
            return result

        # Stage 2: neighborhood aggregation
        candidate_pool = self._candidate_pool(current, candidate)
        current_pool = self._current_pool(current)
        if len(candidate_pool) == 0 or len(current_pool) == 0:
            result.reason = "empty pool"
            return result

        # Stage 3: full matching between the pools
        pool_matches = ratio_matching(
            current_pool.descriptors, candidate_pool.descriptors, self._ratio_threshold
        )
        result.num_matches = len(pool_matches)
        if len(pool_matches) < self._min_inliers:
            result.reason = "not enough matches"
            return result

        query_idx = np.array([m.queryIdx for m in pool_matches], dtype=np.int64)
        train_idx = np.array([m.trainIdx for m in pool_matches], dtype=np.int64)
        result.current_points = current_pool.keypoints[query_idx]
        result.candidate_points = candidate_pool.keypoints[train_idx]
        result.current_vertices = current_pool.vertex_ids[query_idx]
        result.candidate_vertices = candidate_pool.vertex_ids[train_idx]
        matched_world_points = candidate_pool.world_points[train_idx]

        # Stage 4: relative pose
        estimate = self._pose_estimator.estimate(
            matched_world_points,
            result.current_points,
            self._graph.get_camera_matrix(),
        )
        result.num_inliers = 0 if estimate is None else estimate.num_inliers
        if self._verbose:
            print(
                f"[LoopClosing] Matches/inliers: {result.num_matches} / {result.num_inliers}"
            )
        if estimate is None or estimate.num_inliers < self._min_inliers:
            result.reason = "not enough inliers"
            return result

        result.inliers = np.asarray(estimate.inliers, dtype=np.int64)
        result.estimated_transform = estimate.camera_from_points.inverse()

        # Stage 5: per structural pair voting
        votes: dict[tuple[int, int], int] = {}
        candidate_keyframes: list[int] = []
        vertex_keyframes: dict[int, int] = {}
        for i in result.inliers:
            pair = (int(result.current_vertices[i]), int(result.candidate_vertices[i]))
            if pair[0] == pair[1]:
                continue
            votes[pair] = votes.get(pair, 0) + 1

            if pair[1] not in vertex_keyframes:
                try:
                    keyframe = self._graph.get_vertex_frame_id(pair[1])
                except KeyError:
                    # Cluster stored before the graph added its vertex
                    result.reason = "unknown vertex"
                    return result
                vertex_keyframes[pair[1]] = keyframe
                if keyframe not in candidate_keyframes:
                    candidate_keyframes.append(keyframe)

        result.candidate_keyframes = candidate_keyframes
        result.vertex_keyframes = vertex_keyframes
        result.pair_inliers = {
            pair: count
            for pair, count in votes.items()
            if count >= self._min_pair_inliers
        }
        if not result.pair_inliers:
            result.reason = "no structural pair"
            return result

        result.is_valid = True
        return result

    def _candidate_pool(self, current: Cluster, candidate: Cluster) -> FeaturePool:
        """Candidate plus its structural neighbors, with 3D points."""
        clusters = [candidate]
        neighbor_ids = self._graph.find_closest_vertices(
            candidate.id,
            current.id,
            self._discard_window,
            self._candidate_neighbors,
        )
        for neighbor_id in neighbor_ids:
            if neighbor_id == candidate.id:
                continue
            neighbor = self._load_cluster(neighbor_id)
            if neighbor.is_empty:
                continue
            clusters.append(neighbor)

        pool = FeaturePool.from_clusters(clusters, with_points=True)

        camera_pose = current.camera_pose
        if self._filter_by_frustum and camera_pose is not None and len(pool) > 0:
            camera_model = self._graph.get_camera_model()
            pool = pool.select(camera_model.in_frustum(pool.world_points, camera_pose))

        return pool

    def _current_pool(self, current: Cluster) -> FeaturePool:
        """Current cluster plus the other clusters of its keyframe."""
        clusters = [current]
        for vertex_id in self._graph.get_frame_vertices(current.frame_id):
            if vertex_id == current.id:
                continue
            frame_cluster = self._load_cluster(vertex_id)
            if frame_cluster.is_empty:
                continue
            clusters.append(frame_cluster)

        return FeaturePool.from_clusters(clusters, with_points=False)

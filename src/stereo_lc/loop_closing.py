"""Loop closing thread.

The producer (stereo front end) pushes finished clusters with
``add_cluster_to_queue``. The loop closing thread polls the queue and,
for each cluster:

1. Ingest: hash it and store it on disk
2. Proximity search: verify the structurally closest vertices
3. Hash search: verify the most similar hashes

Accepted loops add edges to the shared pose graph. The graph owner must
keep its optimization passes from interleaving with these calls.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass

import numpy as np

from .candidate_search import CandidateSearch, LoopClosureRecords
from .cluster import Cluster
from .cluster_queue import ClusterQueue
from .cluster_store import ClusterStore
from .config import LoopClosingConfig
from .edge_insertion import EdgeInserter
from .geometric_verification import GeometricVerifier, VerificationResult
from .graph import Graph
from .hashing import HashIndex
from .pose_estimation import PoseEstimator, RansacPnP
from .visualization import ImageSink, KeyframeImages, LoopClosurePublisher


@dataclass
class LoopClosingStatus:
    """Telemetry of the loop closing thread."""

    num_keyframes: int = 0
    num_loop_closures: int = 0
    queue_depth: int = 0


class LoopClosing:
    """Detects revisited places and adds loop closure edges to the graph."""

    def __init__(
        self,
        graph: Graph,
        config: LoopClosingConfig | None = None,
        image_sinks: list[ImageSink] | tuple[ImageSink, ...] = (),
        pose_estimator: PoseEstimator | None = None,
    ) -> None:
        """Initialize loop closing.

        Args:
            graph: Shared pose graph
            config: Loop closing configuration
            image_sinks: Receivers of the matchings image of each loop
            pose_estimator: RANSAC PnP override (default: RansacPnP built
                from the config)
        """
        self._graph = graph
        self._config = config or LoopClosingConfig()
        cfg = self._config

        self._queue = ClusterQueue()
        self._store = ClusterStore(
            cfg.store_directory, pose_provider=graph.get_vertex_camera_pose
        )
        self._hash_index = HashIndex(
            n_projections=cfg.hash_projections,
            n_bins=cfg.hash_bins,
            seed=cfg.hash_seed,
        )
        self._records = LoopClosureRecords()
        self._search = CandidateSearch(
            graph=graph,
            hash_index=self._hash_index,
            records=self._records,
            discard_window=cfg.discard_window,
            proximity_candidates=cfg.proximity_candidates,
            hash_candidates=cfg.hash_candidates,
        )
        self._verifier = GeometricVerifier(
            graph=graph,
            load_cluster=self._store.get,
            pose_estimator=pose_estimator
            or RansacPnP(
                iterations=cfg.ransac_iterations,
                reprojection_error=cfg.reprojection_error,
                max_inliers=cfg.max_ransac_inliers,
            ),
            discard_window=cfg.discard_window,
            candidate_neighbors=cfg.candidate_neighbors,
            min_inliers=cfg.min_inliers,
            ratio_threshold=cfg.ratio_threshold,
            match_percentage_gate=cfg.match_percentage_gate,
            min_pair_inliers=cfg.min_pair_inliers,
            filter_by_frustum=cfg.filter_by_frustum,
            verbose=cfg.verbose,
        )
        self._inserter = EdgeInserter(graph, self._records, verbose=cfg.verbose)

        self._publisher: LoopClosurePublisher | None = None
        if cfg.save_images:
            self._publisher = LoopClosurePublisher(
                cfg.loop_closures_directory,
                KeyframeImages(
                    cfg.keyframes_directory, graph.get_camera_model().resolution
                ),
                image_sinks,
            )

        self._current: Cluster | None = None
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._is_setup = False

    # Lifecycle

    def setup(self) -> None:
        """Create the scratch store and the output directory.

        Raises:
            RuntimeError: If a directory cannot be created
        """
        self._store.reset()
        if self._publisher is not None:
            self._publisher.reset()
            self._publisher.publish_placeholder()
        self._is_setup = True

    def start(self) -> None:
        """Set up and start the loop closing thread."""
        if self._thread is not None:
            return

        self.setup()
        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run, name="loop_closing", daemon=True)
        self._thread.start()
        print("[LoopClosing] Thread started")

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the thread and release the scratch store."""
        if self._thread is not None:
            self._stop_event.set()
            self._thread.join(timeout=timeout)
            self._thread = None
            print("[LoopClosing] Thread stopped")
        self.finalize()

    def finalize(self) -> None:
        """Remove the scratch store."""
        self._store.destroy()
        self._is_setup = False

    def run(self) -> None:
        """Poll the queue until ``stop`` is requested."""
        period = self._config.poll_period
        while not self._stop_event.is_set():
            try:
                processed = self.spin_once()
            except Exception as e:
                print(f"[LoopClosing] Error: {e}")
                processed = False

            if not processed:
                self._queue.wait_for_cluster(period)

    def __enter__(self) -> LoopClosing:
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    # Producer side

    def add_cluster_to_queue(self, cluster: Cluster) -> None:
        """Hand a finished cluster to loop closing (thread-safe)."""
        self._queue.push(cluster)

    # Pipeline

    def spin_once(self) -> bool:
        """Run one Dequeue, Ingest, ProximitySearch, HashSearch cycle.

        Returns:
            True if a cluster was dequeued
        """
        if not self._is_setup:
            raise RuntimeError("LoopClosing.setup() must be called before processing")

        cluster = self._queue.try_pop()
        if cluster is None:
            return False

        if self.process_new_cluster(cluster):
            self.search_by_proximity()
            self.search_by_hash()
        return True

    def process_new_cluster(self, cluster: Cluster) -> bool:
        """Hash and store a dequeued cluster.

        Returns:
            False if the cluster is empty and was skipped
        """
        if cluster.is_empty:
            if self._config.verbose:
                print(f"[LoopClosing] Cluster {cluster.id} has no descriptors, skipped")
            return False

        self._hash_index.add(cluster.id, cluster.descriptors)
        self._store.put(cluster)
        self._current = cluster
        return True

    def search_by_proximity(self) -> int:
        """Verify the structurally closest vertices of the current cluster.

        Returns:
            Number of candidates that closed a loop
        """
        if self._current is None:
            return 0

        closed = 0
        for candidate_id in self._search.by_proximity(self._current.id):
            candidate = self._store.get(candidate_id)
            if candidate.is_empty:
                continue
            if self.close_loop_with_cluster(candidate):
                print("[LoopClosing] By proximity")
                closed += 1
        return closed

    def search_by_hash(self) -> int:
        """Verify the clusters with the most similar hash.

        Returns:
            Number of candidates that closed a loop
        """
        if self._current is None:
            return 0

        closed = 0
        for score in self._search.by_hash(self._current.id):
            candidate = self._store.get(score.cluster_id)
            if candidate.is_empty:
                continue
            if self.close_loop_with_cluster(candidate):
                print(f"[LoopClosing] By hash (similarity={score.similarity:.2f})")
                closed += 1
        return closed

    def close_loop_with_cluster(self, candidate: Cluster) -> bool:
        """Verify a candidate against the current cluster and insert edges.

        Returns:
            True if the candidate closed a loop
        """
        if self._current is None:
            return False

        result = self._verifier.verify(self._current, candidate)
        if not result.is_valid:
            return False

        self._inserter.insert(result)
        self._report(result, candidate)

        if self._publisher is not None:
            self._publisher.publish(result, self._current.frame_id)

        return True

    def _report(self, result: VerificationResult, candidate: Cluster) -> None:
        print(
            f"[LoopClosing] LOOP: {self._current.frame_id} <-> {candidate.frame_id} "
            f"Matches: {result.num_matches}. Inliers: {result.num_inliers}"
        )
        if not self._config.verbose:
            return

        # Every current-pool vertex belongs to the current keyframe
        for (current_vertex, candidate_vertex), count in result.pair_inliers.items():
            print(
                f"  {current_vertex} (frame: {self._current.frame_id}) "
                f"<-> {candidate_vertex} (frame: {result.vertex_keyframes[candidate_vertex]}) "
                f"Inliers: {count}"
            )

        odom = self._current.camera_pose
        spnp = result.estimated_transform
        if odom is None or spnp is None:
            return
        print(f"[LoopClosing] ODOM XYZ: {_xyz(odom.translation)}")
        print(f"[LoopClosing] SPNP XYZ: {_xyz(spnp.translation)}")
        print(f"[LoopClosing] ODOM RPY: {_xyz(np.degrees(odom.rpy()))}")
        print(f"[LoopClosing] SPNP RPY: {_xyz(np.degrees(spnp.rpy()))}")

    # Telemetry

    @property
    def status(self) -> LoopClosingStatus:
        """Keyframe count, loop closure count and queue depth."""
        return LoopClosingStatus(
            num_keyframes=self._graph.get_frame_num(),
            num_loop_closures=len(self._records),
            queue_depth=self._queue.depth(),
        )

    @property
    def loop_closures(self) -> list[tuple[int, int]]:
        """Closed (current vertex, candidate vertex) pairs."""
        return self._records.pairs

    @property
    def hash_index(self) -> HashIndex:
        """Hashes of the processed clusters."""
        return self._hash_index

    @property
    def store(self) -> ClusterStore:
        """Scratch cluster store."""
        return self._store

    @property
    def is_running(self) -> bool:
        """Check if the thread is running."""
        return self._thread is not None and self._thread.is_alive()


def _xyz(values) -> str:
    return f"{values[0]:.3f}, {values[1]:.3f}, {values[2]:.3f}"

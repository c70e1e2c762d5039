"""Tests for the LoopClosing driver."""

import time
from pathlib import Path

import numpy as np
import pytest

from stereo_lc.cluster import Cluster
from stereo_lc.config import LoopClosingConfig
from stereo_lc.graph import CameraModel
from stereo_lc.loop_closing import LoopClosing
from stereo_lc.pose import SE3
from stereo_lc.pose_graph import PoseGraph

from conftest import FixedEstimator, make_cluster, random_descriptors, scene_points

CANDIDATE_CAMERA = SE3.from_rpy(0.0, 0.0, 0.0, np.array([0.0, 0.0, 0.0]))
CURRENT_CAMERA = SE3.from_rpy(0.0, 0.05, 0.0, np.array([0.3, 0.0, 0.2]))


@pytest.fixture
def config(tmp_path: Path) -> LoopClosingConfig:
    """Quiet configuration in a temporary working directory."""
    return LoopClosingConfig(
        working_directory=tmp_path, save_images=False, verbose=False, poll_rate_hz=200.0
    )


@pytest.fixture
def short_window_config(tmp_path: Path) -> LoopClosingConfig:
    """Quiet configuration that hash-searches from the first cluster on."""
    return LoopClosingConfig(
        working_directory=tmp_path,
        save_images=False,
        verbose=False,
        poll_rate_hz=200.0,
        discard_window=1,
    )


@pytest.fixture
def revisit(rng, camera_model: CameraModel, pose_graph: PoseGraph):
    """Candidate 10 and current 100 observing the same 40 world points."""
    descriptors = random_descriptors(rng, 40)
    points_world = CANDIDATE_CAMERA.transform_points(scene_points(rng, 40))

    def observe(camera_pose: SE3) -> np.ndarray:
        return camera_model.project(camera_pose.inverse().transform_points(points_world))

    candidate = make_cluster(
        10, 10, descriptors, points_world, observe(CANDIDATE_CAMERA), CANDIDATE_CAMERA
    )
    current = make_cluster(
        100, 100, descriptors.copy(), points_world, observe(CURRENT_CAMERA), CURRENT_CAMERA
    )
    pose_graph.add_vertex(10, 10, camera_pose=CANDIDATE_CAMERA)
    pose_graph.add_vertex(100, 100, camera_pose=CURRENT_CAMERA)
    return candidate, current


class TestLoopClosing:
    """Test suite for LoopClosing."""

    def test_spin_requires_setup(self, pose_graph: PoseGraph, config: LoopClosingConfig):
        """Test that processing before setup is an error."""
        with pytest.raises(RuntimeError):
            LoopClosing(pose_graph, config).spin_once()

    def test_spin_once_empty_queue(self, pose_graph: PoseGraph, config: LoopClosingConfig):
        """Test that an empty queue yields no work."""
        loop_closing = LoopClosing(pose_graph, config)
        loop_closing.setup()

        assert loop_closing.spin_once() is False
        loop_closing.finalize()

    def test_empty_cluster_skipped(self, pose_graph: PoseGraph, config: LoopClosingConfig):
        """Test that an empty cluster is dequeued but neither stored nor hashed."""
        loop_closing = LoopClosing(pose_graph, config)
        loop_closing.setup()
        loop_closing.add_cluster_to_queue(Cluster.empty(0))

        assert loop_closing.spin_once() is True
        assert len(loop_closing.hash_index) == 0
        assert len(loop_closing.store) == 0
        loop_closing.finalize()

    def test_ingest_stores_and_hashes(self, rng, pose_graph: PoseGraph, config: LoopClosingConfig):
        """Test that a processed cluster is hashed and readable from the store."""
        pose_graph.add_vertex(0, 0, camera_pose=SE3.identity())
        loop_closing = LoopClosing(pose_graph, config)
        loop_closing.setup()
        cluster = make_cluster(0, 0, random_descriptors(rng, 15), scene_points(rng, 15))
        loop_closing.add_cluster_to_queue(cluster)

        loop_closing.spin_once()

        assert loop_closing.hash_index.get(0) is not None
        np.testing.assert_array_equal(
            loop_closing.store.get(0).descriptors, cluster.descriptors
        )
        loop_closing.finalize()

    def test_loop_closed_by_proximity(
        self, revisit, pose_graph: PoseGraph, config: LoopClosingConfig
    ):
        """Test a revisit verified with RANSAC PnP and inserted as an edge."""
        candidate, current = revisit
        loop_closing = LoopClosing(pose_graph, config)
        loop_closing.setup()
        loop_closing.add_cluster_to_queue(candidate)
        loop_closing.add_cluster_to_queue(current)

        loop_closing.spin_once()
        loop_closing.spin_once()

        assert loop_closing.loop_closures == [(100, 10)]
        edge = pose_graph.loop_edges[0]
        assert (edge.from_id, edge.to_id) == (10, 100)
        assert edge.weight >= 35
        expected = CANDIDATE_CAMERA.inverse() @ CURRENT_CAMERA
        assert edge.measurement.allclose(expected, atol=1e-3)
        assert pose_graph.num_updates == 1
        assert loop_closing.status.num_loop_closures == 1
        loop_closing.finalize()

    def test_too_few_inliers_adds_no_edge(
        self, revisit, pose_graph: PoseGraph, config: LoopClosingConfig
    ):
        """Test that a weak PnP result leaves the graph untouched."""
        candidate, current = revisit
        loop_closing = LoopClosing(pose_graph, config, pose_estimator=FixedEstimator([0, 1, 2]))
        loop_closing.setup()
        loop_closing.add_cluster_to_queue(candidate)
        loop_closing.add_cluster_to_queue(current)

        loop_closing.spin_once()
        loop_closing.spin_once()

        assert pose_graph.num_loop_edges == 0
        assert pose_graph.num_updates == 0
        assert loop_closing.loop_closures == []
        loop_closing.finalize()

    def test_loop_closed_by_hash(
        self, revisit, capsys, pose_graph: PoseGraph, short_window_config: LoopClosingConfig
    ):
        """Test a revisit found only through the hash once proximity proposes decoys."""
        candidate, current = revisit
        # Closer to the current vertex than the candidate, never stored
        for vertex_id in (50, 51, 52):
            pose_graph.add_vertex(vertex_id, vertex_id, camera_pose=CURRENT_CAMERA)
        loop_closing = LoopClosing(pose_graph, short_window_config)
        loop_closing.setup()
        loop_closing.add_cluster_to_queue(candidate)
        loop_closing.add_cluster_to_queue(current)

        loop_closing.spin_once()
        loop_closing.spin_once()

        output = capsys.readouterr().out
        assert "By hash" in output
        assert "By proximity" not in output
        assert loop_closing.loop_closures == [(100, 10)]
        assert pose_graph.num_loop_edges == 1
        assert pose_graph.num_updates == 1
        loop_closing.finalize()

    def test_loop_closed_once_across_searches(
        self, revisit, capsys, pose_graph: PoseGraph, short_window_config: LoopClosingConfig
    ):
        """Test that a pair closed by proximity is not proposed again by hash."""
        candidate, current = revisit
        loop_closing = LoopClosing(pose_graph, short_window_config)
        loop_closing.setup()
        loop_closing.add_cluster_to_queue(candidate)
        loop_closing.add_cluster_to_queue(current)

        loop_closing.spin_once()
        loop_closing.spin_once()

        output = capsys.readouterr().out
        assert "By proximity" in output
        assert "By hash" not in output
        assert loop_closing.loop_closures == [(100, 10)]
        assert pose_graph.num_loop_edges == 1
        assert pose_graph.num_updates == 1
        loop_closing.finalize()

    def test_clusters_missing_from_graph(
        self, rng, pose_graph: PoseGraph, short_window_config: LoopClosingConfig
    ):
        """Test that stored clusters the graph doesn't know close nothing and raise nothing."""
        descriptors = random_descriptors(rng, 40)
        points = scene_points(rng, 40)
        loop_closing = LoopClosing(
            pose_graph, short_window_config, pose_estimator=FixedEstimator(range(20))
        )
        loop_closing.setup()
        loop_closing.add_cluster_to_queue(make_cluster(10, 10, descriptors, points))
        loop_closing.add_cluster_to_queue(make_cluster(100, 100, descriptors.copy(), points))

        assert loop_closing.spin_once() is True
        assert loop_closing.spin_once() is True

        assert pose_graph.num_loop_edges == 0
        assert pose_graph.num_updates == 0
        assert loop_closing.loop_closures == []
        loop_closing.finalize()

    def test_loop_image_published(
        self, revisit, pose_graph: PoseGraph, tmp_path: Path
    ):
        """Test that the placeholder and the matchings image reach the sinks."""
        candidate, current = revisit
        received = []
        config = LoopClosingConfig(working_directory=tmp_path, verbose=False)
        loop_closing = LoopClosing(pose_graph, config, image_sinks=[received.append])
        loop_closing.setup()
        loop_closing.add_cluster_to_queue(candidate)
        loop_closing.add_cluster_to_queue(current)

        loop_closing.spin_once()
        loop_closing.spin_once()

        assert len(received) == 2
        assert received[0].shape == (384, 512, 3)
        assert (config.loop_closures_directory / "00000.jpg").exists()
        loop_closing.finalize()

    def test_status(self, rng, pose_graph: PoseGraph, config: LoopClosingConfig):
        """Test keyframe count and queue depth reporting."""
        pose_graph.add_vertex(0, 0, camera_pose=SE3.identity())
        pose_graph.add_vertex(1, 0, camera_pose=SE3.identity())
        loop_closing = LoopClosing(pose_graph, config)
        loop_closing.add_cluster_to_queue(Cluster.empty(0))
        loop_closing.add_cluster_to_queue(Cluster.empty(1))

        status = loop_closing.status

        assert status.num_keyframes == 1
        assert status.queue_depth == 2
        assert status.num_loop_closures == 0

    def test_thread_lifecycle(self, revisit, pose_graph: PoseGraph, config: LoopClosingConfig):
        """Test that the thread drains the queue and cleans up on stop."""
        candidate, current = revisit

        with LoopClosing(pose_graph, config) as loop_closing:
            assert loop_closing.is_running
            loop_closing.add_cluster_to_queue(candidate)
            loop_closing.add_cluster_to_queue(current)

            deadline = time.monotonic() + 10.0
            while not loop_closing.loop_closures and time.monotonic() < deadline:
                time.sleep(0.01)

            assert loop_closing.loop_closures == [(100, 10)]

        assert not loop_closing.is_running
        assert not config.store_directory.exists()

"""Tests for Cluster and ClusterStore."""

from pathlib import Path

import numpy as np
import pytest

from stereo_lc.cluster import Cluster
from stereo_lc.cluster_store import ClusterStore
from stereo_lc.pose import SE3

from conftest import make_cluster, random_descriptors, scene_points


@pytest.fixture
def store(tmp_path: Path) -> ClusterStore:
    """Reset cluster store in a temporary directory."""
    store = ClusterStore(tmp_path / "haloc")
    store.reset()
    return store


class TestCluster:
    """Test suite for Cluster."""

    def test_empty_sentinel(self):
        """Test the empty cluster."""
        cluster = Cluster.empty(3)

        assert cluster.id == 3
        assert cluster.is_empty
        assert len(cluster) == 0
        assert not cluster.has_world_points

    def test_misaligned_rows(self, rng):
        """Test that keypoints must align with descriptors."""
        with pytest.raises(ValueError):
            Cluster(
                id=0,
                frame_id=0,
                keypoints=np.zeros((3, 2)),
                descriptors=random_descriptors(rng, 4),
                world_points=np.zeros((0, 3)),
            )

    def test_has_world_points(self, rng):
        """Test detection of a full set of 3D points."""
        cluster = make_cluster(0, 0, random_descriptors(rng, 5), scene_points(rng, 5))

        assert cluster.has_world_points


class TestClusterStore:
    """Test suite for ClusterStore."""

    def test_roundtrip(self, store: ClusterStore, rng):
        """Test that a stored cluster reads back unchanged."""
        cluster = make_cluster(4, 2, random_descriptors(rng, 10), scene_points(rng, 10))

        store.put(cluster)
        loaded = store.get(4)

        assert loaded.id == 4
        assert loaded.frame_id == 2
        np.testing.assert_array_equal(loaded.descriptors, cluster.descriptors)
        np.testing.assert_array_equal(loaded.keypoints, cluster.keypoints)
        np.testing.assert_allclose(loaded.world_points, cluster.world_points)
        assert loaded.descriptors.dtype == np.uint8
        assert store.contains(4)
        assert len(store) == 1

    def test_miss_returns_empty(self, store: ClusterStore):
        """Test that a missing ID yields the empty sentinel."""
        cluster = store.get(99)

        assert cluster.is_empty
        assert cluster.id == 99

    def test_corrupt_record_returns_empty(self, store: ClusterStore):
        """Test that an unreadable record yields the empty sentinel."""
        (store.directory / "5.npz").write_bytes(b"not an archive")

        assert store.get(5).is_empty

    def test_pose_provider_attaches_camera_pose(self, tmp_path: Path, rng):
        """Test that reads attach the camera pose from the provider."""
        pose = SE3.from_rpy(0.0, 0.0, 0.5, translation=np.array([1.0, 0.0, 0.0]))
        poses = {1: pose}
        store = ClusterStore(tmp_path / "haloc", pose_provider=poses.__getitem__)
        store.reset()
        store.put(make_cluster(1, 1, random_descriptors(rng, 3)))
        store.put(make_cluster(2, 2, random_descriptors(rng, 3)))

        assert store.get(1).camera_pose.allclose(pose)
        assert store.get(2).camera_pose is None

    def test_reset_wipes_previous_run(self, store: ClusterStore, rng):
        """Test that reset removes earlier records."""
        store.put(make_cluster(1, 1, random_descriptors(rng, 3)))

        store.reset()

        assert len(store) == 0
        assert not store.contains(1)

    def test_reset_failure(self, tmp_path: Path):
        """Test that an uncreatable directory raises RuntimeError."""
        blocker = tmp_path / "blocker"
        blocker.write_text("")

        with pytest.raises(RuntimeError):
            ClusterStore(blocker / "haloc").reset()

    def test_destroy(self, store: ClusterStore):
        """Test that destroy removes the directory."""
        store.destroy()

        assert not store.directory.exists()

"""Per-run on-disk store of cluster features.

Each cluster is written once, as ``<id>.npz`` holding its frame id,
keypoints, descriptors and world points, and read back many times by
candidate lookups. The directory is wiped when the store is reset and
deleted when it is destroyed; it is scratch space, not an archive.
"""

from __future__ import annotations

import os
import shutil
import zipfile
from pathlib import Path
from typing import Callable

import numpy as np

from .cluster import Cluster
from .pose import SE3


class ClusterStore:
    """Key/value store mapping cluster ID to its serialized features."""

    def __init__(
        self,
        directory: str | Path,
        pose_provider: Callable[[int], SE3] | None = None,
    ) -> None:
        """Initialize the store (nothing touches the disk until ``reset``).

        Args:
            directory: Scratch directory for this run
            pose_provider: Optional lookup of the camera pose for a cluster
                ID, attached to clusters on read
        """
        self._directory = Path(directory)
        self._pose_provider = pose_provider

    def reset(self) -> None:
        """Wipe and recreate the store directory.

        Raises:
            RuntimeError: If the directory cannot be created
        """
        try:
            if self._directory.is_dir():
                shutil.rmtree(self._directory)
            self._directory.mkdir(parents=True)
        except OSError as e:
            raise RuntimeError(
                f"Impossible to create the cluster store directory: {self._directory}"
            ) from e

    def destroy(self) -> None:
        """Delete the store directory and everything in it."""
        if self._directory.is_dir():
            shutil.rmtree(self._directory, ignore_errors=True)

    def put(self, cluster: Cluster) -> None:
        """Serialize a cluster under its ID.

        The archive is written to a temporary name and renamed into place,
        so readers never see a partial file.
        """
        path = self._path(cluster.id)
        tmp_path = path.with_suffix(".tmp")
        with open(tmp_path, "wb") as f:
            np.savez(
                f,
                frame_id=np.int64(cluster.frame_id),
                keypoints=cluster.keypoints,
                descriptors=cluster.descriptors,
                points=cluster.world_points,
            )
        os.replace(tmp_path, path)

    def get(self, cluster_id: int) -> Cluster:
        """Read a cluster back.

        Returns:
            The stored cluster, or the empty sentinel if it is absent or
            unreadable
        """
        path = self._path(cluster_id)
        if not path.exists():
            return Cluster.empty(cluster_id)

        try:
            with np.load(path) as data:
                frame_id = int(data["frame_id"])
                keypoints = data["keypoints"]
                descriptors = data["descriptors"]
                points = data["points"]
            cluster = Cluster(
                id=cluster_id,
                frame_id=frame_id,
                keypoints=keypoints,
                descriptors=descriptors,
                world_points=points,
                camera_pose=self._camera_pose(cluster_id),
            )
        except (OSError, ValueError, KeyError, zipfile.BadZipFile):
            return Cluster.empty(cluster_id)

        return cluster

    def contains(self, cluster_id: int) -> bool:
        """True if a record exists for ``cluster_id``."""
        return self._path(cluster_id).exists()

    def _camera_pose(self, cluster_id: int) -> SE3 | None:
        if self._pose_provider is None:
            return None
        try:
            return self._pose_provider(cluster_id)
        except KeyError:
            return None

    def _path(self, cluster_id: int) -> Path:
        return self._directory / f"{cluster_id}.npz"

    @property
    def directory(self) -> Path:
        """Store directory."""
        return self._directory

    def __len__(self) -> int:
        if not self._directory.is_dir():
            return 0
        return sum(1 for _ in self._directory.glob("*.npz"))

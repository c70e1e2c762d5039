"""RANSAC perspective-3-point pose estimation for loop verification."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

import cv2
import numpy as np

from .pose import SE3


@dataclass
class PnPEstimate:
    """Result of RANSAC PnP.

    Attributes:
        rvec: Rodrigues rotation of T_camera_points
        tvec: Translation of T_camera_points
        inliers: Indices of the inlier correspondences
    """

    rvec: np.ndarray  # (3,)
    tvec: np.ndarray  # (3,)
    inliers: np.ndarray  # (K,) int

    @property
    def num_inliers(self) -> int:
        """Number of inlier correspondences."""
        return len(self.inliers)

    @property
    def camera_from_points(self) -> SE3:
        """Estimated transform T_camera_points as returned by PnP."""
        return SE3.from_rvec_tvec(self.rvec, self.tvec)


class PoseEstimator(Protocol):
    """Anything that estimates a camera pose from 3D-2D correspondences."""

    def estimate(
        self,
        points_3d: np.ndarray,
        points_2d: np.ndarray,
        camera_matrix: np.ndarray,
    ) -> PnPEstimate | None: ...


class RansacPnP:
    """RANSAC over minimal samples solved with the AP3P solver.

    Every iteration draws 4 correspondences (AP3P uses the fourth to pick
    among the P3P solutions), scores the model by pixel reprojection
    error, and keeps the model with most inliers. The run stops after a
    fixed number of iterations or as soon as a model reaches
    ``max_inliers``. The winning model is refined on its inliers.

    cv2.solvePnPRansac is not used because OpenCV 4 no longer accepts the
    inlier count that ends the search early.
    """

    SAMPLE_SIZE = 4

    def __init__(
        self,
        iterations: int = 100,
        reprojection_error: float = 5.0,
        max_inliers: int = 200,
        refine: bool = True,
        seed: int = 0,
    ) -> None:
        """Initialize the estimator.

        Args:
            iterations: RANSAC iteration budget
            reprojection_error: Inlier threshold in pixels
            max_inliers: Stop early once a model has this many inliers
            refine: Refine the best model with iterative PnP on its inliers
            seed: Seed for sampling (each call restarts from it)
        """
        self._iterations = iterations
        self._reprojection_error = reprojection_error
        self._max_inliers = max_inliers
        self._refine = refine
        self._seed = seed

    def estimate(
        self,
        points_3d: np.ndarray,
        points_2d: np.ndarray,
        camera_matrix: np.ndarray,
    ) -> PnPEstimate | None:
        """Estimate T_camera_points from correspondences.

        Args:
            points_3d: (N, 3) points in the points frame
            points_2d: (N, 2) observed pixels
            camera_matrix: 3x3 intrinsics

        Returns:
            Best estimate, or None if no sample produced a model
        """
        n_points = len(points_3d)
        if n_points < self.SAMPLE_SIZE or len(points_2d) != n_points:
            return None

        object_points = np.asarray(points_3d, dtype=np.float64).reshape(-1, 3)
        image_points = np.asarray(points_2d, dtype=np.float64).reshape(-1, 2)
        camera_matrix = np.asarray(camera_matrix, dtype=np.float64)

        rng = np.random.default_rng(self._seed)
        best: PnPEstimate | None = None

        for _ in range(self._iterations):
            sample = rng.choice(n_points, size=self.SAMPLE_SIZE, replace=False)
            try:
                success, rvec, tvec = cv2.solvePnP(
                    object_points[sample].reshape(-1, 1, 3),
                    image_points[sample].reshape(-1, 1, 2),
                    camera_matrix,
                    None,
                    flags=cv2.SOLVEPNP_AP3P,
                )
            except cv2.error:
                continue
            if not success or not np.isfinite(rvec).all() or not np.isfinite(tvec).all():
                continue

            inliers = self._find_inliers(object_points, image_points, rvec, tvec, camera_matrix)
            if best is None or len(inliers) > best.num_inliers:
                best = PnPEstimate(rvec=rvec.flatten(), tvec=tvec.flatten(), inliers=inliers)
                if best.num_inliers >= self._max_inliers:
                    break

        if best is None or best.num_inliers == 0:
            return None

        if self._refine and best.num_inliers >= self.SAMPLE_SIZE:
            best = self._refine_estimate(best, object_points, image_points, camera_matrix)

        return best

    def _refine_estimate(
        self,
        estimate: PnPEstimate,
        object_points: np.ndarray,
        image_points: np.ndarray,
        camera_matrix: np.ndarray,
    ) -> PnPEstimate:
        """Refine with iterative PnP on the inliers; keep it if no worse."""
        rvec = estimate.rvec.reshape(3, 1).copy()
        tvec = estimate.tvec.reshape(3, 1).copy()
        try:
            success, rvec, tvec = cv2.solvePnP(
                object_points[estimate.inliers].reshape(-1, 1, 3),
                image_points[estimate.inliers].reshape(-1, 1, 2),
                camera_matrix,
                None,
                rvec=rvec,
                tvec=tvec,
                useExtrinsicGuess=True,
                flags=cv2.SOLVEPNP_ITERATIVE,
            )
        except cv2.error:
            return estimate

        if not success or not np.isfinite(rvec).all() or not np.isfinite(tvec).all():
            return estimate

        inliers = self._find_inliers(object_points, image_points, rvec, tvec, camera_matrix)
        if len(inliers) < estimate.num_inliers:
            return estimate
        return PnPEstimate(rvec=rvec.flatten(), tvec=tvec.flatten(), inliers=inliers)

    def _find_inliers(
        self,
        object_points: np.ndarray,
        image_points: np.ndarray,
        rvec: np.ndarray,
        tvec: np.ndarray,
        camera_matrix: np.ndarray,
    ) -> np.ndarray:
        """Indices of points in front of the camera within the pixel threshold."""
        projected, _ = cv2.projectPoints(
            object_points.reshape(-1, 1, 3), rvec, tvec, camera_matrix, None
        )
        errors = np.linalg.norm(projected.reshape(-1, 2) - image_points, axis=1)

        R, _ = cv2.Rodrigues(rvec)
        depths = (object_points @ R.T + np.asarray(tvec).reshape(1, 3))[:, 2]

        mask = (errors < self._reprojection_error) & (depths > 0.0)
        return np.flatnonzero(mask)

    @property
    def reprojection_error(self) -> float:
        """RANSAC inlier threshold in pixels."""
        return self._reprojection_error

"""SE(3) rigid transforms used for vertex poses and loop-closure edges."""

from __future__ import annotations

from dataclasses import dataclass

import cv2
import numpy as np


@dataclass
class SE3:
    """Rigid transform ``T_a_b`` taking points from frame ``b`` to frame ``a``.

        p_a = R @ p_b + t

    Vertex poses in the pose graph are ``T_world_vertex``. PnP returns
    ``T_camera_points``, which is inverted before it enters an edge.

    Attributes:
        rotation: Rotation matrix R (3, 3)
        translation: Translation t (3,)
    """

    rotation: np.ndarray
    translation: np.ndarray

    def __post_init__(self) -> None:
        rotation = np.asarray(self.rotation, dtype=np.float64)
        translation = np.asarray(self.translation, dtype=np.float64).reshape(-1)
        if rotation.shape != (3, 3) or translation.shape != (3,):
            raise ValueError(
                f"SE3 needs a (3, 3) rotation and a (3,) translation, "
                f"got {rotation.shape} and {translation.shape}"
            )
        self.rotation = rotation
        self.translation = translation

    @classmethod
    def identity(cls) -> SE3:
        """Identity transform."""
        return cls(np.eye(3), np.zeros(3))

    @classmethod
    def from_matrix(cls, matrix: np.ndarray) -> SE3:
        """Build from a homogeneous ``[[R, t], [0, 1]]`` matrix."""
        matrix = np.asarray(matrix, dtype=np.float64)
        if matrix.shape != (4, 4):
            raise ValueError(f"Homogeneous matrix must be (4, 4), got {matrix.shape}")
        return cls(matrix[:3, :3], matrix[:3, 3])

    @classmethod
    def from_rvec_tvec(cls, rvec: np.ndarray, tvec: np.ndarray) -> SE3:
        """Build from OpenCV's (Rodrigues vector, translation) pair.

        This is the form cv2.solvePnP returns, i.e. ``T_camera_points``.
        """
        rotation, _ = cv2.Rodrigues(np.asarray(rvec, dtype=np.float64).reshape(3, 1))
        return cls(rotation, tvec)

    @classmethod
    def from_rpy(
        cls,
        roll: float,
        pitch: float,
        yaw: float,
        translation: np.ndarray | None = None,
    ) -> SE3:
        """Build from fixed-axis roll, pitch, yaw in radians.

        The rotation is ``Rz(yaw) @ Ry(pitch) @ Rx(roll)``.
        """
        cr, sr = np.cos(roll), np.sin(roll)
        cp, sp = np.cos(pitch), np.sin(pitch)
        cy, sy = np.cos(yaw), np.sin(yaw)
        rotation = np.array(
            [
                [cy * cp, cy * sp * sr - sy * cr, cy * sp * cr + sy * sr],
                [sy * cp, sy * sp * sr + cy * cr, sy * sp * cr - cy * sr],
                [-sp, cp * sr, cp * cr],
            ]
        )
        return cls(rotation, np.zeros(3) if translation is None else translation)

    def to_matrix(self) -> np.ndarray:
        """Homogeneous (4, 4) matrix."""
        matrix = np.eye(4)
        matrix[:3, :3] = self.rotation
        matrix[:3, 3] = self.translation
        return matrix

    def to_rvec_tvec(self) -> tuple[np.ndarray, np.ndarray]:
        """OpenCV (Rodrigues vector, translation) pair, both (3,)."""
        rvec, _ = cv2.Rodrigues(self.rotation)
        return rvec.reshape(3), self.translation.copy()

    def inverse(self) -> SE3:
        """``T_b_a`` for this ``T_a_b``."""
        rotation_t = self.rotation.T
        return SE3(rotation_t, -(rotation_t @ self.translation))

    def compose(self, other: SE3) -> SE3:
        """Chain transforms: ``T_a_b.compose(T_b_c)`` is ``T_a_c``."""
        return SE3(
            self.rotation @ other.rotation,
            self.rotation @ other.translation + self.translation,
        )

    def transform_points(self, points: np.ndarray) -> np.ndarray:
        """Map (N, 3) points from frame ``b`` to frame ``a``."""
        points = np.atleast_2d(np.asarray(points, dtype=np.float64))
        if points.shape[1] != 3:
            raise ValueError(f"Expected (N, 3) points, got {points.shape}")
        return points @ self.rotation.T + self.translation

    def rpy(self) -> tuple[float, float, float]:
        """(roll, pitch, yaw) in radians, the inverse of ``from_rpy``."""
        r = self.rotation
        pitch = float(np.arcsin(np.clip(-r[2, 0], -1.0, 1.0)))
        if abs(np.cos(pitch)) < 1e-9:
            # Gimbal lock: fold the whole rotation about z into yaw
            return 0.0, pitch, float(np.arctan2(-r[0, 1], r[1, 1]))
        return (
            float(np.arctan2(r[2, 1], r[2, 2])),
            pitch,
            float(np.arctan2(r[1, 0], r[0, 0])),
        )

    def allclose(self, other: SE3, atol: float = 1e-9) -> bool:
        """True if rotation and translation agree within ``atol``."""
        return bool(
            np.allclose(self.rotation, other.rotation, atol=atol)
            and np.allclose(self.translation, other.translation, atol=atol)
        )

    @property
    def position(self) -> np.ndarray:
        """Origin of frame ``b`` expressed in frame ``a``."""
        return self.translation.copy()

    def __matmul__(self, other: SE3) -> SE3:
        return self.compose(other)

    def __repr__(self) -> str:
        x, y, z = self.translation
        roll, pitch, yaw = np.degrees(self.rpy())
        return (
            f"SE3(xyz=[{x:.3f}, {y:.3f}, {z:.3f}], "
            f"rpy_deg=[{roll:.1f}, {pitch:.1f}, {yaw:.1f}])"
        )

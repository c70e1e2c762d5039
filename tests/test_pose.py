"""Tests for SE3 transforms."""

import numpy as np
import pytest

from stereo_lc.pose import SE3


class TestSE3:
    """Test suite for SE3."""

    def test_inverse_composes_to_identity(self):
        """Test that T @ T^-1 is the identity."""
        T = SE3.from_rpy(0.1, -0.2, 0.3, translation=np.array([1.0, 2.0, 3.0]))

        assert (T @ T.inverse()).allclose(SE3.identity())
        assert (T.inverse() @ T).allclose(SE3.identity())

    def test_rpy_roundtrip(self):
        """Test that rpy() inverts from_rpy()."""
        T = SE3.from_rpy(0.2, 0.4, -1.0)

        assert T.rpy() == pytest.approx((0.2, 0.4, -1.0))

    def test_transform_points(self):
        """Test applying a pure translation to points."""
        T = SE3(rotation=np.eye(3), translation=np.array([1.0, 0.0, 0.0]))

        points = T.transform_points(np.array([[0.0, 0.0, 0.0], [1.0, 1.0, 1.0]]))

        np.testing.assert_allclose(points, [[1.0, 0.0, 0.0], [2.0, 1.0, 1.0]])

    def test_rvec_tvec_roundtrip(self):
        """Test conversion to and from the OpenCV representation."""
        T = SE3.from_rpy(0.3, 0.1, 0.2, translation=np.array([0.5, -0.5, 2.0]))

        rvec, tvec = T.to_rvec_tvec()

        assert SE3.from_rvec_tvec(rvec, tvec).allclose(T)

    def test_matrix_roundtrip(self):
        """Test conversion to and from a 4x4 matrix."""
        T = SE3.from_rpy(0.0, 0.0, np.pi / 2, translation=np.array([1.0, 2.0, 3.0]))

        assert SE3.from_matrix(T.to_matrix()).allclose(T)

    def test_invalid_shapes(self):
        """Test that malformed inputs raise ValueError."""
        with pytest.raises(ValueError):
            SE3(rotation=np.eye(2), translation=np.zeros(3))
        with pytest.raises(ValueError):
            SE3.from_matrix(np.eye(3))

"""Hash-based place recognition.

A variable-size set of local descriptors is summarized as a fixed-length
vector so that comparing two places costs the same regardless of how many
features they have:

1. The descriptors are projected onto a small orthonormal random basis
2. Each projection is histogrammed over bins whose edges come from the
   first cluster ever seen
3. The per-projection histograms are normalized and concatenated

The basis and the bin edges are frozen after initialization; hashes are
only comparable because every one of them uses the same basis.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np


def descriptors_to_float(descriptors: np.ndarray) -> np.ndarray:
    """Convert descriptors to float vectors for projection.

    Binary descriptors (uint8) are unpacked to one 0/1 value per bit so
    that the projection sees Hamming structure instead of byte values.

    Args:
        descriptors: Descriptor matrix (N, D)

    Returns:
        Float matrix (N, D') with D' = 8 * D for binary descriptors
    """
    descriptors = np.asarray(descriptors)
    if descriptors.dtype == np.uint8:
        return np.unpackbits(descriptors, axis=1).astype(np.float32)
    return descriptors.astype(np.float32)


@dataclass
class HashEntry:
    """A hash stored for one processed cluster.

    Attributes:
        cluster_id: ID of the cluster
        hash_vector: Fixed-length hash, shape (n_projections * n_bins,)
    """

    cluster_id: int
    hash_vector: np.ndarray


class HashIndex:
    """Append-only index of cluster hashes with a lazily built basis."""

    def __init__(
        self,
        n_projections: int = 3,
        n_bins: int = 16,
        seed: int = 0,
    ) -> None:
        """Initialize an empty, uninitialized index.

        Args:
            n_projections: Number of random projection vectors
            n_bins: Histogram bins per projection
            seed: Seed for the random basis
        """
        self._n_projections = n_projections
        self._n_bins = n_bins
        self._seed = seed

        self._basis: np.ndarray | None = None  # (D, n_projections)
        self._center: np.ndarray | None = None  # (D,)
        self._bin_edges: np.ndarray | None = None  # (n_projections, n_bins - 1)

        self._entries: list[HashEntry] = []
        self._positions: dict[int, int] = {}

    @property
    def is_initialized(self) -> bool:
        """True once the projection basis exists."""
        return self._basis is not None

    def initialize(self, descriptor_sample: np.ndarray) -> bool:
        """Build the projection basis from the first cluster's descriptors.

        Does nothing if the index is already initialized or the sample has
        no rows.

        Args:
            descriptor_sample: Descriptors (N, D) of the first cluster

        Returns:
            True if this call initialized the index
        """
        if self.is_initialized or len(descriptor_sample) == 0:
            return False

        sample = descriptors_to_float(descriptor_sample)
        dim = sample.shape[1]
        if dim < self._n_projections:
            raise ValueError(
                f"Descriptor dimension {dim} is smaller than {self._n_projections} projections"
            )

        # Orthonormal basis from the QR decomposition of a gaussian matrix
        rng = np.random.default_rng(self._seed)
        gaussian = rng.standard_normal((dim, self._n_projections))
        basis, _ = np.linalg.qr(gaussian)
        self._basis = basis.astype(np.float32)
        self._center = sample.mean(axis=0)

        projections = self._project(sample)
        quantiles = np.linspace(0.0, 1.0, self._n_bins + 1)[1:-1]
        self._bin_edges = np.quantile(projections, quantiles, axis=0).T.astype(
            np.float32
        )
        return True

    def hash(self, descriptors: np.ndarray) -> np.ndarray:
        """Compute the hash of a descriptor set.

        Args:
            descriptors: Descriptors (N, D)

        Returns:
            Hash vector of length n_projections * n_bins; all zeros for an
            empty descriptor set

        Raises:
            RuntimeError: If the index is not initialized
        """
        if not self.is_initialized:
            raise RuntimeError("HashIndex used before initialize()")

        length = self._n_projections * self._n_bins
        if len(descriptors) == 0:
            return np.zeros(length, dtype=np.float32)

        values = descriptors_to_float(descriptors)
        if values.shape[1] != self._basis.shape[0]:
            raise ValueError(
                f"Descriptor dimension {values.shape[1]} does not match "
                f"the hash basis ({self._basis.shape[0]})"
            )
        projections = self._project(values)  # (N, n_projections)

        histograms = np.zeros((self._n_projections, self._n_bins), dtype=np.float32)
        for p in range(self._n_projections):
            bins = np.searchsorted(self._bin_edges[p], projections[:, p], side="right")
            histograms[p] = np.bincount(bins, minlength=self._n_bins)

        histograms /= len(values)
        return histograms.reshape(length)

    def similarity(self, hash_a: np.ndarray, hash_b: np.ndarray) -> float:
        """Similarity between two hashes, symmetric, in [0, 1].

        One minus the mean total-variation distance between the
        per-projection histograms.
        """
        a = np.asarray(hash_a, dtype=np.float64).reshape(self._n_projections, -1)
        b = np.asarray(hash_b, dtype=np.float64).reshape(self._n_projections, -1)
        distance = 0.5 * np.abs(a - b).sum(axis=1).mean()
        return float(1.0 - distance)

    def add(self, cluster_id: int, descriptors: np.ndarray) -> HashEntry:
        """Hash a cluster's descriptors and append the entry.

        Initializes the basis on the first call with a non-empty
        descriptor set.
        """
        if cluster_id in self._positions:
            raise ValueError(f"Cluster {cluster_id} is already hashed")

        self.initialize(descriptors)
        entry = HashEntry(cluster_id=cluster_id, hash_vector=self.hash(descriptors))
        self._positions[cluster_id] = len(self._entries)
        self._entries.append(entry)
        return entry

    def get(self, cluster_id: int) -> np.ndarray | None:
        """Return the stored hash of a cluster, or None."""
        position = self._positions.get(cluster_id)
        if position is None:
            return None
        return self._entries[position].hash_vector

    def _project(self, values: np.ndarray) -> np.ndarray:
        return (values - self._center) @ self._basis

    @property
    def basis(self) -> np.ndarray | None:
        """Projection basis (D, n_projections), None before initialization."""
        return None if self._basis is None else self._basis.copy()

    @property
    def bin_edges(self) -> np.ndarray | None:
        """Histogram bin edges (n_projections, n_bins - 1)."""
        return None if self._bin_edges is None else self._bin_edges.copy()

    @property
    def entries(self) -> list[HashEntry]:
        """Entries in processing order."""
        return list(self._entries)

    @property
    def hash_length(self) -> int:
        """Length of every hash vector."""
        return self._n_projections * self._n_bins

    def __len__(self) -> int:
        return len(self._entries)

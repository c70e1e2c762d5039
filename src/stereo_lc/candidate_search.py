"""Loop closure candidate search.

Two independent strategies propose clusters to verify against the
current one:

- Proximity: the structurally closest vertices of the pose graph
- Hash: the clusters whose appearance hash is most similar

Both skip the discard window around the current cluster and any cluster
already closed with it.
"""

from __future__ import annotations

from dataclasses import dataclass

from .graph import Graph
from .hashing import HashIndex


@dataclass
class CandidateScore:
    """A hash search candidate.

    Attributes:
        cluster_id: ID of the candidate cluster
        similarity: Hash similarity with the query [0, 1]
    """

    cluster_id: int
    similarity: float


class LoopClosureRecords:
    """Blacklist of structural vertex pairs already closed.

    Pairs are unordered: ``(a, b)`` and ``(b, a)`` are the same record.
    Records are never removed.
    """

    def __init__(self) -> None:
        self._pairs: list[tuple[int, int]] = []
        self._keys: set[frozenset[int]] = set()

    def add(self, vertex_a: int, vertex_b: int) -> bool:
        """Record a closed pair.

        Returns:
            True if the pair was new
        """
        key = frozenset((vertex_a, vertex_b))
        if key in self._keys:
            return False
        self._keys.add(key)
        self._pairs.append((vertex_a, vertex_b))
        return True

    def contains(self, vertex_a: int, vertex_b: int) -> bool:
        """True if the unordered pair has been recorded."""
        return frozenset((vertex_a, vertex_b)) in self._keys

    def partners(self, vertex_id: int) -> set[int]:
        """Vertices already closed with ``vertex_id``."""
        partners = set()
        for a, b in self._pairs:
            if a == vertex_id:
                partners.add(b)
            elif b == vertex_id:
                partners.add(a)
        return partners

    @property
    def pairs(self) -> list[tuple[int, int]]:
        """Recorded pairs in insertion order."""
        return list(self._pairs)

    def __contains__(self, pair: tuple[int, int]) -> bool:
        return self.contains(*pair)

    def __len__(self) -> int:
        return len(self._pairs)


def in_discard_window(candidate_id: int, cluster_id: int, discard_window: int) -> bool:
    """True if ``candidate_id`` lies strictly within the window around ``cluster_id``."""
    return cluster_id - discard_window < candidate_id < cluster_id + discard_window


class CandidateSearch:
    """Proposes clusters to verify for a newly stored cluster."""

    def __init__(
        self,
        graph: Graph,
        hash_index: HashIndex,
        records: LoopClosureRecords,
        discard_window: int = 20,
        proximity_candidates: int = 3,
        hash_candidates: int = 5,
    ) -> None:
        """Initialize candidate search.

        Args:
            graph: Pose graph for proximity queries
            hash_index: Hashes of every processed cluster
            records: Pairs already closed
            discard_window: Temporal radius excluded around the query
            proximity_candidates: Maximum proximity candidates
            hash_candidates: Maximum hash candidates
        """
        self._graph = graph
        self._hash_index = hash_index
        self._records = records
        self._discard_window = discard_window
        self._proximity_candidates = proximity_candidates
        self._hash_candidates = hash_candidates

    def by_proximity(self, cluster_id: int) -> list[int]:
        """Structurally closest vertices to ``cluster_id`` outside its window.

        Returns:
            Up to ``proximity_candidates`` vertex IDs, closest first
        """
        neighbors = self._graph.find_closest_vertices(
            cluster_id,
            cluster_id,
            self._discard_window,
            self._proximity_candidates,
        )
        closed = self._records.partners(cluster_id)
        return [
            vid
            for vid in neighbors
            if vid != cluster_id
            and vid not in closed
            and not in_discard_window(vid, cluster_id, self._discard_window)
        ]

    def by_hash(self, cluster_id: int) -> list[CandidateScore]:
        """Clusters with the most similar hash outside the window.

        Returns nothing while fewer than ``discard_window`` clusters have
        been hashed, or if ``cluster_id`` has no hash.

        Returns:
            Up to ``hash_candidates`` scores, most similar first
        """
        if len(self._hash_index) < self._discard_window:
            return []

        query = self._hash_index.get(cluster_id)
        if query is None:
            return []

        closed = self._records.partners(cluster_id)

        scores = []
        for entry in self._hash_index.entries:
            candidate_id = entry.cluster_id
            if in_discard_window(candidate_id, cluster_id, self._discard_window):
                continue
            if candidate_id == cluster_id or candidate_id in closed:
                continue
            scores.append(
                CandidateScore(
                    cluster_id=candidate_id,
                    similarity=self._hash_index.similarity(query, entry.hash_vector),
                )
            )

        # Stable sort keeps processing order among equal scores
        scores.sort(key=lambda s: s.similarity, reverse=True)
        return scores[: self._hash_candidates]

    @property
    def discard_window(self) -> int:
        """Temporal radius excluded around the query."""
        return self._discard_window

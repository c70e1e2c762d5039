"""Stereo loop closing - appearance-hash loop closure detection for stereo SLAM.

Clusters of features produced by a stereo front end are hashed, stored,
and compared against earlier clusters. Candidates found by graph
proximity or by hash similarity are verified with RANSAC PnP, and
accepted loops become weighted edges of the pose graph.

Key components:
- LoopClosing: Background thread driving the whole pipeline
- HashIndex: Fixed-length appearance hashes of descriptor sets
- GeometricVerifier: Matching, aggregation and PnP verification
- EdgeInserter: Loop closure edges between structural vertices
- PoseGraph: In-memory graph implementing the Graph protocol
"""

__version__ = "0.1.0"

# Re-export main classes for convenient imports
from .candidate_search import CandidateScore, CandidateSearch, LoopClosureRecords
from .cluster import Cluster
from .cluster_queue import ClusterQueue
from .cluster_store import ClusterStore
from .config import LoopClosingConfig
from .edge_insertion import EdgeInserter, LoopEdge, compute_edge_transform
from .geometric_verification import FeaturePool, GeometricVerifier, VerificationResult
from .graph import CameraModel, Graph
from .hashing import HashEntry, HashIndex
from .loop_closing import LoopClosing, LoopClosingStatus
from .matching import match_percentage, ratio_matching
from .pose import SE3
from .pose_estimation import PnPEstimate, PoseEstimator, RansacPnP
from .pose_graph import PoseEdge, PoseGraph, PoseVertex
from .visualization import (
    ImageSink,
    KeyframeImages,
    LoopClosurePublisher,
    RerunImageSink,
    compose_matchings_image,
    placeholder_image,
)

__all__ = [
    "__version__",
    # Driver
    "LoopClosing",
    "LoopClosingStatus",
    "LoopClosingConfig",
    # Clusters
    "Cluster",
    "ClusterQueue",
    "ClusterStore",
    # Place Recognition
    "HashIndex",
    "HashEntry",
    "CandidateSearch",
    "CandidateScore",
    "LoopClosureRecords",
    # Geometric Verification
    "GeometricVerifier",
    "VerificationResult",
    "FeaturePool",
    "ratio_matching",
    "match_percentage",
    "RansacPnP",
    "PnPEstimate",
    "PoseEstimator",
    # Pose Graph
    "Graph",
    "CameraModel",
    "PoseGraph",
    "PoseVertex",
    "PoseEdge",
    "EdgeInserter",
    "LoopEdge",
    "compute_edge_transform",
    # Pose
    "SE3",
    # Visualization
    "ImageSink",
    "RerunImageSink",
    "KeyframeImages",
    "LoopClosurePublisher",
    "compose_matchings_image",
    "placeholder_image",
]

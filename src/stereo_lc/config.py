"""Loop closing configuration."""

from __future__ import annotations

from dataclasses import dataclass, fields
from pathlib import Path

import yaml


@dataclass
class LoopClosingConfig:
    """Configuration for loop closing.

    Attributes:
        discard_window: Temporal radius (in cluster ids) excluded from
            candidate search around the query cluster
        proximity_candidates: Structurally closest vertices verified per cycle
        hash_candidates: Best hash matches verified per cycle
        candidate_neighbors: Neighbors of a candidate aggregated into its pool
        min_inliers: Minimum raw matches and PnP inliers for a loop
        max_ransac_inliers: RANSAC stops early once a model reaches this many
            inliers
        ransac_iterations: Fixed RANSAC iteration budget
        reprojection_error: RANSAC inlier threshold in pixels
        ratio_threshold: Lowe's ratio test threshold
        match_percentage_gate: Stage 1 gate, a pair passes only if its match
            percentage is strictly greater
        min_pair_inliers: Inliers a structural pair needs to become an edge
        hash_projections: Number of random projections in the hash basis
        hash_bins: Histogram bins per projection
        hash_seed: Seed for the projection basis
        poll_rate_hz: Driver tick rate
        working_directory: Root of the scratch store and the output images
        keyframes_directory: Directory holding ``NNNNN.jpg`` keyframe images
        save_images: Compose, save and publish a matchings image per loop
        filter_by_frustum: Drop candidate pool rows whose 3D point falls
            outside the current camera frustum
        verbose: Print per-loop diagnostics
    """

    discard_window: int = 20
    proximity_candidates: int = 3
    hash_candidates: int = 5
    candidate_neighbors: int = 5
    min_inliers: int = 20
    max_ransac_inliers: int = 200
    ransac_iterations: int = 100
    reprojection_error: float = 5.0
    ratio_threshold: float = 0.8
    match_percentage_gate: float = 35.0
    min_pair_inliers: int = 5
    hash_projections: int = 3
    hash_bins: int = 16
    hash_seed: int = 0
    poll_rate_hz: float = 500.0
    working_directory: str | Path = "~/.stereo_lc"
    keyframes_directory: str | Path | None = None
    save_images: bool = True
    filter_by_frustum: bool = False
    verbose: bool = True

    def __post_init__(self) -> None:
        """Normalize paths and validate values."""
        self.working_directory = Path(self.working_directory).expanduser()
        if self.keyframes_directory is None:
            self.keyframes_directory = self.working_directory / "keyframes"
        else:
            self.keyframes_directory = Path(self.keyframes_directory).expanduser()

        for name in (
            "discard_window",
            "proximity_candidates",
            "hash_candidates",
            "min_inliers",
            "max_ransac_inliers",
            "ransac_iterations",
            "min_pair_inliers",
            "hash_projections",
            "hash_bins",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")

        if self.candidate_neighbors < 0:
            raise ValueError(
                f"candidate_neighbors must be non-negative, got {self.candidate_neighbors}"
            )
        if not 0.0 < self.ratio_threshold <= 1.0:
            raise ValueError(
                f"ratio_threshold must be in (0, 1], got {self.ratio_threshold}"
            )
        if not 0.0 <= self.match_percentage_gate <= 100.0:
            raise ValueError(
                f"match_percentage_gate must be in [0, 100], got {self.match_percentage_gate}"
            )
        if self.reprojection_error <= 0.0 or self.poll_rate_hz <= 0.0:
            raise ValueError("reprojection_error and poll_rate_hz must be positive")

    @property
    def store_directory(self) -> Path:
        """Scratch directory for the per-run cluster store."""
        return self.working_directory / "haloc"

    @property
    def loop_closures_directory(self) -> Path:
        """Output directory for loop closure matchings images."""
        return self.working_directory / "loop_closures"

    @property
    def poll_period(self) -> float:
        """Seconds between driver ticks."""
        return 1.0 / self.poll_rate_hz

    @classmethod
    def from_yaml(cls, yaml_path: str | Path) -> LoopClosingConfig:
        """Load configuration from a YAML file.

        The parameters may sit at the top level or under a ``loop_closing``
        key. Missing parameters keep their defaults.

        Args:
            yaml_path: Path to the YAML file

        Returns:
            Loaded configuration

        Raises:
            FileNotFoundError: If the file doesn't exist
            ValueError: If the file has unknown keys or invalid values
        """
        path = Path(yaml_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {yaml_path}")

        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ValueError(f"Config must be a mapping in {yaml_path}")
        if "loop_closing" in data:
            data = data["loop_closing"] or {}

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown config keys in {yaml_path}: {', '.join(unknown)}")

        return cls(**data)

"""Loop closure matchings image.

On every accepted loop, the current keyframe is drawn centred above the
candidate keyframes, with one line per inlier correspondence coloured by
structural pair. The image is written to the loop closures directory and
forwarded to any number of image sinks (e.g. Rerun).

Layout:
    +------------------------------------------+
    |        [label] current keyframe          |
    +--------------------+---------------------+
    | candidate kf A     | candidate kf B      |
    | [label]            | [label]             |
    +--------------------+---------------------+
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import cv2
import numpy as np
import rerun as rr

from .geometric_verification import VerificationResult

_FONT = cv2.FONT_HERSHEY_PLAIN
_LABEL_MARGIN = 10


class ImageSink(Protocol):
    """Receives composed BGR images."""

    def __call__(self, image: np.ndarray) -> None: ...


class RerunImageSink:
    """Logs matchings images to a Rerun entity."""

    def __init__(
        self,
        entity_path: str = "loop_closing/matchings",
        app_name: str | None = None,
        spawn: bool = False,
    ) -> None:
        """Initialize the sink.

        Args:
            entity_path: Rerun entity the images are logged to
            app_name: If given, initialize a Rerun recording with this name
            spawn: Spawn the viewer when initializing
        """
        if app_name is not None:
            rr.init(app_name, spawn=spawn)
        self._entity_path = entity_path

    def __call__(self, image: np.ndarray) -> None:
        rr.log(self._entity_path, rr.Image(cv2.cvtColor(image, cv2.COLOR_BGR2RGB)))


@dataclass
class MatchedPointPair:
    """An inlier correspondence to draw.

    Attributes:
        current_point: Pixel in the current keyframe
        candidate_point: Pixel in the candidate keyframe
        candidate_index: Position of the candidate keyframe in the bottom row
        color_index: Index into the pair colors
    """

    current_point: tuple[float, float]
    candidate_point: tuple[float, float]
    candidate_index: int
    color_index: int


def pair_colors(n: int, seed: int = 12345) -> list[tuple[int, int, int]]:
    """Deterministic random BGR colors, one per structural pair."""
    rng = np.random.default_rng(seed)
    return [tuple(int(c) for c in rng.integers(0, 255, size=3)) for _ in range(n)]


def placeholder_image(text: str = " No Loop Closures ") -> np.ndarray:
    """Black 512x384 image with a centred caption."""
    image = np.zeros((384, 512, 3), dtype=np.uint8)
    cv2.putText(image, text, (95, 200), _FONT, 2, (255, 255, 255), 2, cv2.LINE_8)
    return image


def _label_height() -> int:
    (_, text_height), _ = cv2.getTextSize("Keyframe", _FONT, 1, 1)
    return text_height + _LABEL_MARGIN


def _labelled(image: np.ndarray, keyframe_id: int, on_top: bool) -> np.ndarray:
    """Add a white strip with "Keyframe N" above or below the image."""
    strip_height = _label_height()
    rows, cols = image.shape[:2]
    out = np.full((rows + strip_height, cols, 3), 255, dtype=np.uint8)
    text = f" Keyframe {keyframe_id}"
    if on_top:
        out[strip_height:] = image
        cv2.putText(out, text, (5, strip_height - 6), _FONT, 1, (0, 0, 0), 1, cv2.LINE_8)
    else:
        out[:rows] = image
        cv2.putText(out, text, (5, out.shape[0] - 5), _FONT, 1, (0, 0, 0), 1, cv2.LINE_8)
    return out


def compose_matchings_image(
    current_image: np.ndarray,
    current_keyframe: int,
    candidate_images: list[tuple[int, np.ndarray]],
    matched_pairs: list[MatchedPointPair],
    colors: list[tuple[int, int, int]],
) -> np.ndarray:
    """Compose the matchings image.

    All images must share one size.

    Args:
        current_image: BGR image of the current keyframe
        current_keyframe: ID of the current keyframe
        candidate_images: (keyframe ID, BGR image) of each candidate keyframe
        matched_pairs: Correspondences to draw
        colors: BGR color per structural pair

    Returns:
        Composed BGR image
    """
    current = _labelled(current_image, current_keyframe, on_top=True)
    if not candidate_images:
        return current

    bottom = np.hstack(
        [_labelled(image, keyframe, on_top=False) for keyframe, image in candidate_images]
    )
    top = np.zeros((bottom.shape[0], bottom.shape[1], 3), dtype=np.uint8)
    x_offset = int(round(bottom.shape[1] / 2 - current.shape[1] / 2))
    top[: current.shape[0], x_offset : x_offset + current.shape[1]] = current
    canvas = np.vstack([top, bottom])

    label_height = _label_height()
    candidate_width = bottom.shape[1] // len(candidate_images)
    for pair in matched_pairs:
        if not 0 <= pair.candidate_index < len(candidate_images):
            continue
        color = colors[pair.color_index % len(colors)]
        p_current = (
            int(round(x_offset + pair.current_point[0])),
            int(round(label_height + pair.current_point[1])),
        )
        p_candidate = (
            int(round(pair.candidate_index * candidate_width + pair.candidate_point[0])),
            int(round(top.shape[0] + pair.candidate_point[1])),
        )
        cv2.circle(canvas, p_current, 4, color, -1)
        cv2.circle(canvas, p_candidate, 4, color, -1)
        cv2.line(canvas, p_current, p_candidate, color, 2, cv2.LINE_8)

    return canvas


class KeyframeImages:
    """Reads keyframe images saved as ``NNNNN.jpg`` by the front end."""

    def __init__(self, directory: str | Path, resolution: tuple[int, int]) -> None:
        """Initialize the reader.

        Args:
            directory: Directory with the keyframe images
            resolution: (width, height) every image is brought to
        """
        self._directory = Path(directory)
        self._resolution = resolution

    def load(self, keyframe_id: int) -> np.ndarray:
        """Load a keyframe image; a black canvas if it doesn't exist."""
        width, height = self._resolution
        image = cv2.imread(str(self._directory / f"{keyframe_id:05d}.jpg"), cv2.IMREAD_COLOR)
        if image is None:
            return np.zeros((height, width, 3), dtype=np.uint8)
        if image.shape[1] != width or image.shape[0] != height:
            image = cv2.resize(image, (width, height))
        return image


class LoopClosurePublisher:
    """Builds, saves and forwards the matchings image of each loop."""

    def __init__(
        self,
        output_directory: str | Path,
        keyframe_images: KeyframeImages,
        sinks: list[ImageSink] | tuple[ImageSink, ...] = (),
    ) -> None:
        """Initialize the publisher.

        Args:
            output_directory: Where ``NNNNN.jpg`` matchings images are written
            keyframe_images: Source of keyframe images
            sinks: Callables receiving every published image
        """
        self._output_directory = Path(output_directory)
        self._keyframe_images = keyframe_images
        self._sinks = list(sinks)
        self._num_published = 0

    def reset(self) -> None:
        """Wipe and recreate the output directory.

        Raises:
            RuntimeError: If the directory cannot be created
        """
        try:
            if self._output_directory.is_dir():
                for path in self._output_directory.glob("*.jpg"):
                    path.unlink()
            self._output_directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise RuntimeError(
                f"Impossible to create the loop closures directory: {self._output_directory}"
            ) from e
        self._num_published = 0

    def publish_placeholder(self) -> None:
        """Forward the "No Loop Closures" image to the sinks."""
        self._forward(placeholder_image())

    def publish(self, result: VerificationResult, current_keyframe: int) -> Path:
        """Compose, save and forward the image of a valid verification.

        Returns:
            Path of the written image
        """
        image = self.compose(result, current_keyframe)
        path = self._output_directory / f"{self._num_published:05d}.jpg"
        cv2.imwrite(str(path), image)
        self._num_published += 1
        self._forward(image)
        return path

    def compose(self, result: VerificationResult, current_keyframe: int) -> np.ndarray:
        """Compose the matchings image of a verification result."""
        candidate_images = [
            (keyframe, self._keyframe_images.load(keyframe))
            for keyframe in result.candidate_keyframes
        ]
        keyframe_positions = {kf: i for i, kf in enumerate(result.candidate_keyframes)}

        pairs = list(result.pair_inliers)
        color_of_candidate = {}
        for i, (_, candidate_vertex) in enumerate(pairs):
            color_of_candidate.setdefault(candidate_vertex, i)

        matched_pairs = []
        for i in result.inliers:
            candidate_vertex = int(result.candidate_vertices[i])
            color_index = color_of_candidate.get(candidate_vertex)
            if color_index is None:
                continue
            position = keyframe_positions.get(result.vertex_keyframes.get(candidate_vertex))
            if position is None:
                continue
            matched_pairs.append(
                MatchedPointPair(
                    current_point=tuple(result.current_points[i]),
                    candidate_point=tuple(result.candidate_points[i]),
                    candidate_index=position,
                    color_index=color_index,
                )
            )

        return compose_matchings_image(
            self._keyframe_images.load(current_keyframe),
            current_keyframe,
            candidate_images,
            matched_pairs,
            pair_colors(max(len(pairs), 1)),
        )

    def _forward(self, image: np.ndarray) -> None:
        for sink in self._sinks:
            sink(image)

    @property
    def num_published(self) -> int:
        """Matchings images written so far."""
        return self._num_published

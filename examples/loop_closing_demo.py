#!/usr/bin/env python3
"""Demo script for loop closing on a synthetic stereo trajectory.

A camera drives slightly more than one lap around the inside of a
cylindrical wall of landmarks, looking outward. Every keyframe becomes
one cluster whose descriptors are noisy copies of the landmark
descriptors. Odometry drifts; when the camera comes back to the start,
loop closing should find the revisit and add loop edges.

Usage:
    uv run python examples/loop_closing_demo.py

Set ``use_rerun = True`` to stream the matchings images to the Rerun
viewer.
"""

import time
from pathlib import Path

import numpy as np

from stereo_lc import (
    SE3,
    CameraModel,
    Cluster,
    LoopClosing,
    LoopClosingConfig,
    PoseGraph,
    RerunImageSink,
)


def camera_on_circle(theta: float, radius: float) -> SE3:
    """Camera on a circle of the given radius, looking radially outward."""
    c, s = np.cos(theta), np.sin(theta)
    # Columns: camera x (right), y (down), z (forward) in the world
    rotation = np.array([[s, 0.0, c], [-c, 0.0, s], [0.0, -1.0, 0.0]])
    return SE3(rotation=rotation, translation=np.array([radius * c, radius * s, 0.0]))


def main() -> None:
    """Run the loop closing demo."""
    # Configuration
    n_landmarks = 800
    n_keyframes = 70
    laps = 1.15
    wall_radius = 10.0
    path_radius = 2.0
    drift_per_keyframe = np.array([0.004, -0.002, 0.001])
    use_rerun = False

    rng = np.random.default_rng(7)
    camera_model = CameraModel(fx=400.0, fy=400.0, cx=320.0, cy=240.0, width=640, height=480)

    # Landmarks on the wall, each with a fixed 256-bit descriptor
    angles = rng.uniform(0.0, 2.0 * np.pi, n_landmarks)
    landmarks = np.column_stack(
        [
            wall_radius * np.cos(angles),
            wall_radius * np.sin(angles),
            rng.uniform(-2.0, 2.0, n_landmarks),
        ]
    )
    landmark_descriptors = rng.integers(0, 256, size=(n_landmarks, 32), dtype=np.uint8)

    config = LoopClosingConfig(
        discard_window=10,
        working_directory=Path("data/loop_closing_demo"),
        verbose=True,
    )
    graph = PoseGraph(camera_model)
    sinks = [RerunImageSink(app_name="stereo-loop-closing", spawn=True)] if use_rerun else []

    print("=" * 80)
    print("LOOP CLOSING DEMO")
    print("=" * 80)
    print(f"  Landmarks:      {n_landmarks}")
    print(f"  Keyframes:      {n_keyframes} ({laps:.2f} laps)")
    print(f"  Discard window: {config.discard_window}")
    print(f"  Output:         {config.loop_closures_directory}")
    print()

    start_time = time.time()
    with LoopClosing(graph, config, image_sinks=sinks) as loop_closing:
        for k in range(n_keyframes):
            theta = 2.0 * np.pi * laps * k / n_keyframes
            true_pose = camera_on_circle(theta, path_radius)
            odometry_pose = SE3(
                rotation=true_pose.rotation,
                translation=true_pose.translation + drift_per_keyframe * k,
            )
            graph.add_vertex(k, k, camera_pose=odometry_pose)
            if k > 0:
                graph.add_odometry_edge(k - 1, k)

            visible = camera_model.in_frustum(landmarks, true_pose)
            points_camera = true_pose.inverse().transform_points(landmarks[visible])
            keypoints = camera_model.project(points_camera) + rng.normal(
                0.0, 0.5, (int(visible.sum()), 2)
            )

            # Flip a few bits per descriptor
            descriptors = landmark_descriptors[visible].copy()
            noise = rng.integers(0, 8, size=descriptors.shape) == 0
            descriptors ^= (noise * (1 << rng.integers(0, 8, size=descriptors.shape))).astype(
                np.uint8
            )

            loop_closing.add_cluster_to_queue(
                Cluster(
                    id=k,
                    frame_id=k,
                    keypoints=keypoints,
                    descriptors=descriptors,
                    world_points=odometry_pose.transform_points(points_camera),
                    camera_pose=odometry_pose,
                )
            )
            time.sleep(0.02)

        # Let the thread drain the queue
        while loop_closing.status.queue_depth > 0:
            time.sleep(0.05)
        time.sleep(0.5)

        status = loop_closing.status
        closures = loop_closing.loop_closures

    print()
    print("=" * 80)
    print("SUMMARY")
    print("=" * 80)
    print(f"  Keyframes:      {status.num_keyframes}")
    print(f"  Loop closures:  {status.num_loop_closures}")
    print(f"  Loop edges:     {graph.num_loop_edges}")
    print(f"  Elapsed:        {time.time() - start_time:.1f}s")
    for current_vertex, candidate_vertex in closures:
        print(f"    {candidate_vertex:3d} <-> {current_vertex:3d}")


if __name__ == "__main__":
    main()

#! /usr/bin/env python3
# -*- coding: utf-8 -*-
# vim:fenc=utf-8
#
# Copyright © 2020 Edward Higgins <ed.higgins@york.ac.uk>
#
# Distributed under terms of the MIT license.

""" TRACKING - Spot tracking module

Description:
    tracking.py contains the code for the tracking task, which identifies spots
    within every frame of a stack, independently and in parallel, and then
    builds spot trajectories across those frames.

Contains:
    function track
    function find_all_spots
    function track_frame

Version: 0.3.0
"""

# --- Core library imports ---
import sys
import contextlib
import traceback
from multiprocessing.pool import ThreadPool

# --- Local module imports ---
from . import algorithms
from . import spots
from . import trajectories
from .status import is_cancelled


# --- Main tracking function ---
def track(image_data, params, status=None):
    """ Find, fit and integrate spots in every frame, then link them

    Returns (all_spots, trajs): one Spots object per frame index and the list
    of Trajectory objects that passed the length filter.
    """
    all_spots = find_all_spots(image_data, params, status)

    # Build trajectories from collected Spots objects
    trajs = trajectories.build_trajectories(all_spots, params, status)
    if params.verbose:
        if trajs:
            print(f"Built {len(trajs)} trajectories")
        else:
            print("\nNo trajectories built.")

    return all_spots, trajs


# --- Per-frame spot finding over the whole stack ---
def find_all_spots(image_data, params, status=None):
    if image_data.region is None and params.region is not None:
        image_data.set_region(params.region)

    # Integration offsets shared by every frame of this run
    offset_cache = spots.OffsetCache()

    all_spots = [None] * image_data.num_frames
    overall_success_count = 0
    overall_total_count = 0

    # --- SERIAL execution path ---
    if params.num_procs <= 1:
        results = [track_frame(image_data[frame], frame, params, offset_cache, status)
                   for frame in range(image_data.num_frames)]

    # --- PARALLEL execution path ---
    else:
        res = [None] * image_data.num_frames
        with contextlib.closing(ThreadPool(processes=params.num_procs)) as pool:
            # Submit all frames for processing asynchronously
            for frame in range(image_data.num_frames):
                res[frame] = pool.apply_async(track_frame, (image_data[frame], frame, params, offset_cache, status))

            # Gather in frame order, whatever order they finished in
            results = [r.get() for r in res]

    for frame, (frame_spots, success_count, total_count) in enumerate(results):
        all_spots[frame] = frame_spots
        overall_success_count += success_count
        overall_total_count += total_count

    # Report overall Gaussian fit statistics if verbose
    if params.verbose:
        print(f"\n--- Overall Gaussian Fit Summary ---")
        if overall_total_count > 0:
            overall_rate = (overall_success_count / overall_total_count) * 100
            print(f"Total Fits Attempted: {overall_total_count}")
            print(f"Total Successful Fits: {overall_success_count}")
            print(f"Overall Success Rate: {overall_rate:.1f}%")
        else:
            print(f"No spots processed for fitting.")

    return all_spots


# --- Single frame processing function (called serially or by workers) ---
def track_frame(frame_data, frame, params, offset_cache=None, status=None):
    # Counters for Gaussian fits in this frame
    num_success_frame = 0
    total_processed_frame = 0
    frame_spots = spots.Spots(frame=frame, channel=params.channel)
    if offset_cache is None:
        offset_cache = spots.OffsetCache()

    try:
        if is_cancelled(status):
            return frame_spots, 0, 0

        image = frame_data.as_image()
        region = frame_data.bounds()

        # 1. Find candidates, on a DoG filtered copy if requested
        if params.use_dog_filter:
            detection_image = algorithms.dog_filter(image, params.dog_filter_radius)
        else:
            detection_image = image
        frame_spots.find_in_frame(detection_image, params, region, status)
        found_spots = frame_spots.num_spots

        # 2. Fit on the raw frame, then drop duplicates that fitted onto one spot
        if params.fit_peaks and frame_spots.num_spots > 0:
            num_success_frame, total_processed_frame = frame_spots.fit(image, params, region, status)
            frame_spots.remove_nearest_neighbours(params, status)

        # 3. Integrate intensities
        if params.integrate and frame_spots.num_spots > 0:
            frame_spots.get_spot_intensities(image, params, offset_cache, region)

        if params.verbose:
            print(f"Frame {frame:4d}: {frame_spots.num_spots:3d} spots "
                  f"({found_spots:3d} candidates, {total_processed_frame - num_success_frame:3d} failed fits)")

        return frame_spots, num_success_frame, total_processed_frame

    # A failing frame counts as having no spots
    except Exception as e:
        print(f"!!! EXCEPTION CAUGHT in track_frame for frame {frame} !!!")
        print(f"Exception Type: {type(e).__name__} - {e}")
        traceback.print_exc()
        sys.stdout.flush()
        return spots.Spots(frame=frame, channel=params.channel), 0, 0

    finally:
        if status is not None:
            status.frame_done()

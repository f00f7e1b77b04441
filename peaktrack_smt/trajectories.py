#! /usr/bin/env python3
# -*- coding: utf-8 -*-
# vim:fenc=utf-8
#
# Copyright © 2020 Edward Higgins <ed.higgins@york.ac.uk>
#
# Distributed under terms of the MIT license.

""" TRAJECTORIES - Trajectory building module

Description:
    trajectories.py links the spots found in each frame into trajectories.
    Candidate links are proposed in parallel from per-frame k-d trees, then
    accepted greedily in frame order (nearest in time, then in space) so that
    no spot is claimed twice, and finally each chain is walked from its head
    into a Trajectory.

Contains:
    class    PeakLink
    class    Trajectory
    function build_trajectories

Version: 0.3.0
"""

# --- Core library imports ---
import collections
import contextlib
import traceback
import uuid
from multiprocessing.pool import ThreadPool

import numpy as np

# --- Local module imports ---
from .spots import Spots
from .status import is_cancelled

# Candidate edge from a slot in frame i to a slot in a later frame
PeakLink = collections.namedtuple(
    "PeakLink", ["from_slot", "to_frame", "to_slot", "squared_distance", "frame_gap"]
)


# Class representing a single spot's trajectory over time
class Trajectory:
    # Initialise a new trajectory from its head spot
    def __init__(self, id, spots, spot_id, params):
        self.id = id # Unique trajectory identifier
        self.pixel_size = params.pixel_size
        self.write_intensity = params.integrate
        self.verbose_columns = params.verbose_columns

        self.start_frame = spots.frame
        self.end_frame = spots.frame
        self.frames = []
        self.path = []
        self.intensity = []
        self.bg_intensity = []
        self.baseline = []
        self.height = []
        self.sigma = []
        self.r_squared = []
        self.properties = {name: [] for name in spots.properties}
        self.length = 0

        self._append(spots, spot_id)

    # Extend the trajectory with a spot from a later frame
    def extend(self, spots, spot_id):
        if spots.frame <= self.end_frame:
            raise ValueError(f"Frame mismatch: Cannot extend trajectory {self.id} from frame "
                             f"{self.end_frame} back to frame {spots.frame}")
        self.end_frame = spots.frame
        self._append(spots, spot_id)

    def _append(self, spots, spot_id):
        self.frames.append(spots.frame)
        # Scale to physical units only at this point
        if self.pixel_size != 1:
            self.path.append(spots.positions[spot_id, :] * self.pixel_size)
        else:
            self.path.append(spots.positions[spot_id, :].copy())
        self.intensity.append(spots.intensity[spot_id])
        self.bg_intensity.append(spots.median_background[spot_id])
        self.baseline.append(spots.baseline[spot_id])
        self.height.append(spots.height[spot_id])
        self.sigma.append(spots.sigma[spot_id])
        self.r_squared.append(spots.r_squared[spot_id])
        for name, values in self.properties.items():
            values.append(spots.properties[name][spot_id] if name in spots.properties else np.nan)
        self.length += 1

    # Output table, one row per spot keyed by frame index
    def columns(self):
        path = np.array(self.path).reshape(-1, 2)
        table = {
            "T": np.array(self.frames),
            "x": path[:, 0],
            "y": path[:, 1],
        }
        if self.write_intensity:
            table["intensity"] = np.array(self.intensity)
        if self.verbose_columns:
            table["baseline"] = np.array(self.baseline)
            table["height"] = np.array(self.height)
            table["sigma"] = np.array(self.sigma)
            table["R2"] = np.array(self.r_squared)
        for name, values in self.properties.items():
            table[name] = np.array(values)
        return table


# Run func over a list of argument tuples, in a thread pool if allowed
def _map(func, task_args, params):
    if params.num_procs <= 1 or len(task_args) <= 1:
        return [func(*args) for args in task_args]
    with contextlib.closing(ThreadPool(processes=params.num_procs)) as pool:
        return pool.starmap(func, task_args)


# --- Worker func: candidate links out of one frame ---
def _find_possible_links(all_spots, indexes, frame, params, status=None):
    try:
        source = all_spots[frame]
        links = []
        max_diff = params.max_difference
        check_baseline, check_height, check_sigma = params.check_max_difference
        last_frame = min(frame + params.max_frame_gap, len(all_spots) - 1)

        for slot in range(source.num_spots):
            if is_cancelled(status):
                break
            x, y = source.positions[slot]
            for target_frame in range(frame + 1, last_frame + 1):
                target = all_spots[target_frame]
                for target_slot in indexes[target_frame].query_radius((x, y), params.search_radius):
                    # Feature checks, x/y always enforced
                    if check_baseline and abs(source.baseline[slot] - target.baseline[target_slot]) > max_diff[0]:
                        continue
                    if check_height and abs(source.height[slot] - target.height[target_slot]) > max_diff[1]:
                        continue
                    dx = target.positions[target_slot, 0] - x
                    dy = target.positions[target_slot, 1] - y
                    if abs(dx) > max_diff[2] or abs(dy) > max_diff[3]:
                        continue
                    if check_sigma and abs(source.sigma[slot] - target.sigma[target_slot]) > max_diff[4]:
                        continue
                    links.append(PeakLink(slot, target_frame, int(target_slot),
                                          dx * dx + dy * dy, target_frame - frame))

        # Nearest in time first, then nearest in space
        links.sort(key=lambda link: (link.frame_gap, link.squared_distance))
        return links

    except Exception as e:
        print(f"!!! EXCEPTION CAUGHT finding links from frame {frame}: {type(e).__name__} - {e}")
        traceback.print_exc()
        return []


# True if a spot near position in the next max_frame_gap frames already has a track
def _region_already_linked(all_spots, indexes, frame, position, params):
    # Only later frames are inspected
    last_frame = min(frame + params.max_frame_gap, len(all_spots) - 1)
    for check_frame in range(frame + 1, last_frame + 1):
        track_ids = all_spots[check_frame].track_id
        for slot in indexes[check_frame].query_radius(position, params.minimum_distance):
            if track_ids[slot] is not None:
                return True
    return False


# Accept candidate links greedily, one frame at a time in increasing order
def _resolve_links(all_spots, indexes, possible_links, params, status=None):
    heads = []
    track_lengths = {}

    for frame, links in enumerate(possible_links):
        if is_cancelled(status):
            break
        source = all_spots[frame]
        for link in links:
            if is_cancelled(status):
                break
            target = all_spots[link.to_frame]

            # Each spot has at most one link in each direction
            if source.forward_link[link.from_slot, 0] >= 0 or target.backward_link[link.to_slot, 0] >= 0:
                continue
            if _region_already_linked(all_spots, indexes, frame, target.positions[link.to_slot], params):
                continue

            track_id = source.track_id[link.from_slot]
            if track_id is not None:
                target.track_id[link.to_slot] = track_id
                track_lengths[track_id] += 1
            else:
                track_id = uuid.uuid4().hex
                source.track_id[link.from_slot] = track_id
                target.track_id[link.to_slot] = track_id
                track_lengths[track_id] = 2
                heads.append((frame, link.from_slot))

            source.forward_link[link.from_slot] = (link.to_frame, link.to_slot)
            target.backward_link[link.to_slot] = (frame, link.from_slot)

    return heads, track_lengths


# --- Worker func: walk one chain from its head ---
def _materialise_trajectory(all_spots, head, track_lengths, params, status=None):
    try:
        frame, slot = head
        track_id = all_spots[frame].track_id[slot]
        if track_lengths[track_id] < params.min_trajectory_length:
            return None

        traj = Trajectory(track_id, all_spots[frame], slot, params)
        link = all_spots[frame].forward_link[slot]
        # Fail-safe against cycles: no chain is longer than the stack
        while link[0] >= 0 and traj.length < len(all_spots):
            if is_cancelled(status):
                break
            frame, slot = int(link[0]), int(link[1])
            traj.extend(all_spots[frame], slot)
            link = all_spots[frame].forward_link[slot]

        if traj.length < params.min_trajectory_length:
            return None
        return traj

    except Exception as e:
        print(f"!!! EXCEPTION CAUGHT building trajectory from {head}: {type(e).__name__} - {e}")
        traceback.print_exc()
        return None


# Function to build trajectories by linking spots across multiple frames
def build_trajectories(all_spots, params, status=None):
    """ Link the spots of every frame into trajectories

    all_spots holds one Spots object per frame index (None for a frame with
    nothing in it). Only track_id and the link handles of each Spots object
    are written. Returns the trajectories with at least
    params.min_trajectory_length spots, in the order their heads were found.
    """
    all_spots = [s if s is not None else Spots(frame=i) for i, s in enumerate(all_spots)]
    if not any(s.num_spots > 0 for s in all_spots):
        if params.verbose:
            print("\nWarning: No valid spots found in any frame. Cannot build trajectories.")
        return []

    # Start every spot unlinked
    for frame_spots in all_spots:
        frame_spots.track_id = [None] * frame_spots.num_spots
        frame_spots.forward_link[:, :] = -1
        frame_spots.backward_link[:, :] = -1

    # 1. One k-d tree per frame
    indexes = _map(Spots.spatial_index, [(s,) for s in all_spots], params)

    # 2. Candidate links out of each frame
    possible_links = _map(_find_possible_links,
                          [(all_spots, indexes, frame, params, status) for frame in range(len(all_spots))],
                          params)
    if params.verbose:
        print(f"Found {sum(len(links) for links in possible_links)} possible links")

    # 3. Greedy resolution, strictly sequential in frame order
    heads, track_lengths = _resolve_links(all_spots, indexes, possible_links, params, status)

    # 4. Walk each chain from its head
    trajs = _map(_materialise_trajectory,
                 [(all_spots, head, track_lengths, params, status) for head in heads],
                 params)
    trajs = [traj for traj in trajs if traj is not None]

    if params.verbose:
        print(f"Linked {len(heads)} tracks, kept {len(trajs)} with at least "
              f"{params.min_trajectory_length} spots")

    return trajs

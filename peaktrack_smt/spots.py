#! /usr/bin/env python3
# -*- coding: utf-8 -*-
# vim:fenc=utf-8
#
# Copyright © 2020 Edward Higgins <ed.higgins@york.ac.uk>
#
# Distributed under terms of the MIT license.

""" SPOTS - Spot characterisation and manipulation module

Description:
    spots.py contains the Spots class, which stores every peak found in one
    frame as a set of parallel arrays (one slot per peak), along with the
    routines that find, fit, de-duplicate and integrate those peaks.

    Peaks in other frames are referred to by (frame, slot) handles, so the
    tracker never needs to hold references to the peaks themselves.

Contains:
    class    Peak
    class    SpatialIndex
    class    OffsetCache
    class    Spots

Version: 0.3.0
"""

# --- Core library imports ---
import sys
import threading
import numpy as np

# --- SciPy imports ---
from scipy.spatial import KDTree

# --- Local module imports ---
from . import algorithms
from . import images
from .status import is_cancelled

# Per-slot scalar arrays carried by every Spots object
SCALAR_FIELDS = ("pixel_value", "baseline", "height", "sigma",
                 "r_squared", "intensity", "median_background")


# --- Worker func: Fit a single spot with the 2D Gaussian model ---
def _fit_single_spot_worker(position, image_pixels, region, params):
    r = params.fit_radius
    size = 2 * r + 1
    x_start = int(position[0] - r)
    y_start = int(position[1] - r)

    # Window pixels and their coordinates
    window = images.mirror_window(image_pixels, region, x_start, y_start, size, size)
    grid_y, grid_x = np.mgrid[y_start:y_start + size, x_start:x_start + size]
    xs = np.column_stack([grid_x.ravel(), grid_y.ravel()]).astype(np.float64)
    ys = window.ravel().astype(np.float64)

    # Restrict to pixels beyond the secondary threshold if requested
    restricted = params.fit_region_threshold is not None
    if restricted:
        if params.find_negative_peaks:
            selected = ys < -params.fit_region_threshold
        else:
            selected = ys > params.fit_region_threshold
        xs, ys = xs[selected], ys[selected]
        if ys.size == 0:
            return np.full(5, np.nan), np.full(5, np.nan), np.nan

    # Starting point: candidate position, remaining entries from the window
    p = np.array([np.nan, np.nan, position[0], position[1], params.psf_width])
    centre_value = float(images.mirror_pixels(image_pixels, region, int(position[0]), int(position[1])))
    p = algorithms.initial_guess(xs, ys, p, params.find_negative_peaks, centre_value, params.psf_width)

    p, e, _, _ = algorithms.fit_gaussian(xs, ys, p, params.vary,
                                         params.lm_precision, params.lm_max_iterations)

    # Goodness of fit over the fitted pixels, or a fresh window on the fit
    if not np.all(np.isfinite(p)):
        r2 = np.nan
    elif restricted:
        r2 = algorithms.r_squared(xs, ys, p)
    else:
        r2 = _fit_r_squared(image_pixels, region, p, r)

    return p, e, r2


# Goodness of fit on the square of half width radius around the fitted centre
def _fit_r_squared(image_pixels, region, p, radius):
    size = 2 * radius + 1
    x_start = int(p[2] - radius)
    y_start = int(p[3] - radius)
    window = images.mirror_window(image_pixels, region, x_start, y_start, size, size)
    grid_y, grid_x = np.mgrid[y_start:y_start + size, x_start:x_start + size]
    xs = np.column_stack([grid_x.ravel(), grid_y.ravel()]).astype(np.float64)
    return algorithms.r_squared(xs, window.ravel().astype(np.float64), p)


# Accept/reject a fit: divergence, implausible geometry, quality gates
def _fit_is_valid(p, e, r2, params):
    if not (np.all(np.isfinite(p)) and np.all(np.isfinite(e))):
        return False
    # Baseline and height may go negative, position and width may not
    if p[2] < 0 or p[3] < 0 or p[4] < 0:
        return False
    if params.max_error_filter and np.any(np.abs(e) > np.asarray(params.max_error)):
        return False
    if params.min_r_squared is not None:
        if not np.isfinite(r2) or r2 <= params.min_r_squared:
            return False
    return True


# --- Worker func: Background corrected intensity of a single spot ---
def _calculate_single_spot_intensity_worker(position, image_pixels, region, inner_offsets, outer_offsets):
    x, y = position
    if np.isnan(x) or np.isnan(y):
        return np.nan, np.nan, np.nan

    # Nearest pixel
    x_int = int(x + 0.5)
    y_int = int(y + 0.5)

    disc = images.mirror_pixels(image_pixels, region,
                                x_int + inner_offsets[:, 0], y_int + inner_offsets[:, 1])
    annulus = images.mirror_pixels(image_pixels, region,
                                   x_int + outer_offsets[:, 0], y_int + outer_offsets[:, 1])

    # Median of the annulus as the per-pixel background
    bg_intensity = np.median(annulus)
    raw_intensity = np.sum(disc)
    intensity = raw_intensity - bg_intensity * len(inner_offsets)

    return intensity, bg_intensity, raw_intensity


# Disc and annulus pixel offsets for integration
def _integration_offsets(inner_radius, outer_radius):
    inner = []
    outer = []
    for dy in range(-outer_radius, outer_radius + 1):
        for dx in range(-outer_radius, outer_radius + 1):
            d = int(np.floor(np.sqrt(dx * dx + dy * dy) + 0.5))
            if d <= inner_radius:
                inner.append((dx, dy))
            elif d <= outer_radius:
                outer.append((dx, dy))
    return (np.array(inner, dtype=int).reshape(-1, 2),
            np.array(outer, dtype=int).reshape(-1, 2))


# Keep the strongest points at least minimum_distance apart
def _suppress_neighbours(positions, ranking, minimum_distance, status=None, keep_unvisited=False):
    """ Walk ranking (strongest first), keeping each still valid point and
    invalidating every point within minimum_distance of it, itself included.

    Returns the accepted slots in the order they were accepted. On
    cancellation the walk stops; with keep_unvisited the points not yet
    visited and not yet invalidated are accepted as well.
    """
    valid = np.ones(len(positions), dtype=bool)
    index = SpatialIndex(positions)
    accepted = []
    for rank, slot in enumerate(ranking):
        if is_cancelled(status):
            if keep_unvisited:
                accepted.extend(s for s in ranking[rank:] if valid[s])
            break
        if not valid[slot]:
            continue
        accepted.append(slot)
        valid[index.query_radius(positions[slot], minimum_distance)] = False
    return np.array(accepted, dtype=int)


class Peak:
    """ Snapshot of a single slot of a Spots object """
    def __init__(self, spots, slot):
        self.slot = slot
        self.t = spots.frame
        self.c = spots.channel
        self.x, self.y = spots.positions[slot]
        for field in SCALAR_FIELDS:
            setattr(self, field, getattr(spots, field)[slot])
        self.errors = spots.errors[slot].copy()
        self.valid = bool(spots.valid[slot])
        self.properties = {name: values[slot] for name, values in spots.properties.items()}
        self.track_id = spots.track_id[slot]
        self.forward_link = _handle(spots.forward_link[slot])
        self.backward_link = _handle(spots.backward_link[slot])

    def __repr__(self):
        return (f"Peak(t={self.t}, x={self.x:.3f}, y={self.y:.3f}, "
                f"height={self.height:.3f}, sigma={self.sigma:.3f}, track_id={self.track_id})")


def _handle(link):
    # (frame, slot) tuple or None
    if link[0] < 0:
        return None
    return (int(link[0]), int(link[1]))


class SpatialIndex:
    """ Immutable k-d tree over one frame's peak positions

    Radius queries are inclusive and return slot handles, sorted, rather than
    positions.
    """
    def __init__(self, positions, slots=None):
        positions = np.asarray(positions, dtype=np.float64).reshape(-1, 2)
        if slots is None:
            slots = np.arange(len(positions))
        self.slots = np.asarray(slots, dtype=int)
        self.tree = KDTree(positions) if len(positions) > 0 else None

    def __len__(self):
        return len(self.slots)

    def query_radius(self, point, radius):
        if self.tree is None:
            return np.array([], dtype=int)
        found = self.tree.query_ball_point(point, r=radius)
        return self.slots[np.sort(np.asarray(found, dtype=int))]


class OffsetCache:
    """ Caller owned store of integration offsets keyed by (inner, outer) radius """
    def __init__(self):
        self._offsets = {}
        self._lock = threading.Lock()

    def __len__(self):
        return len(self._offsets)

    def offsets(self, inner_radius, outer_radius):
        key = (int(inner_radius), int(outer_radius))
        with self._lock:
            if key not in self._offsets:
                self._offsets[key] = _integration_offsets(*key)
            return self._offsets[key]


class Spots:
    # Initialise Spots object
    def __init__(self, num_spots=0, frame=0, channel=0):
        self.frame = frame
        self.channel = channel
        self.set_positions(np.zeros([num_spots, 2]))

    def __len__(self):
        return self.num_spots

    # Set positions and reset every per-slot attribute
    def set_positions(self, positions):
        positions = np.asarray(positions, dtype=np.float64).reshape(-1, 2)
        self.num_spots = len(positions)
        n = self.num_spots

        self.positions = positions.copy() # x, y
        self.pixel_value = np.zeros(n)
        for field in SCALAR_FIELDS[1:]:
            setattr(self, field, np.full(n, np.nan))
        self.errors = np.full([n, 5], np.nan) # baseline, height, x, y, sigma
        self.valid = np.ones(n, dtype=bool)
        self.properties = {}

        # Tracking state: ids and (frame, slot) handles, -1 = unlinked
        self.track_id = [None] * n
        self.forward_link = np.full([n, 2], -1, dtype=int)
        self.backward_link = np.full([n, 2], -1, dtype=int)

        self.exists = n > 0

    def peak(self, slot):
        return Peak(self, slot)

    def set_property(self, name, values):
        values = np.asarray(values, dtype=np.float64)
        if values.shape != (self.num_spots,):
            sys.exit(f"ERROR: Property '{name}' needs {self.num_spots} values, got {values.shape}")
        self.properties[name] = values

    def spatial_index(self):
        return SpatialIndex(self.positions)

    # Keep only the slots flagged in keep_mask
    def filter(self, keep_mask):
        keep_mask = np.asarray(keep_mask, dtype=bool)
        if np.all(keep_mask):
            return

        self.positions = self.positions[keep_mask]
        for field in SCALAR_FIELDS:
            setattr(self, field, getattr(self, field)[keep_mask])
        self.errors = self.errors[keep_mask]
        self.valid = self.valid[keep_mask]
        self.properties = {name: values[keep_mask] for name, values in self.properties.items()}
        self.track_id = [tid for tid, keep in zip(self.track_id, keep_mask) if keep]
        self.forward_link = self.forward_link[keep_mask]
        self.backward_link = self.backward_link[keep_mask]

        self.num_spots = int(np.sum(keep_mask))
        self.exists = self.num_spots > 0

    # Find thresholded local maxima in a frame
    def find_in_frame(self, frame: np.ndarray, params, region=None, status=None):
        """ Candidate peaks above threshold, at least minimum_distance apart

        Candidates are ranked with a stable sort, weakest first, and taken
        strongest first. Equal values therefore keep row-major scan order and
        the later pixel in that order is taken first; this is deterministic
        but otherwise arbitrary.
        """
        if region is None:
            region = (0, 0, frame.shape[1], frame.shape[0])
        x0, y0, width, height = region
        sub_image = frame[y0:y0 + height, x0:x0 + width]

        # Qualifying pixels in row-major order
        if params.find_negative_peaks:
            ys, xs = np.nonzero(sub_image < -params.threshold)
        else:
            ys, xs = np.nonzero(sub_image > params.threshold)
        values = sub_image[ys, xs].astype(np.float64)
        positions = np.column_stack([xs + x0, ys + y0]).astype(np.float64)

        # Weakest first, then walk from the strongest end
        if params.find_negative_peaks:
            ranking = np.argsort(-values, kind="stable")
        else:
            ranking = np.argsort(values, kind="stable")
        accepted = _suppress_neighbours(positions, ranking[::-1], params.minimum_distance, status)

        self.set_positions(positions[accepted])
        self.pixel_value = values[accepted]

    # Refine every spot with a Gaussian fit, dropping the failures
    def fit(self, frame: np.ndarray, params, region=None, status=None):
        if self.num_spots == 0:
            return 0, 0
        if region is None:
            region = (0, 0, frame.shape[1], frame.shape[0])

        num_total = self.num_spots
        self.valid = np.zeros(num_total, dtype=bool)
        for i in range(num_total):
            if is_cancelled(status):
                break
            try:
                p, e, r2 = _fit_single_spot_worker(self.positions[i], frame, region, params)
            except Exception as err:
                # A failed fit only loses this spot
                if params.verbose:
                    print(f"Fit failed for spot {i} in frame {self.frame}: {type(err).__name__} - {err}")
                continue

            self.baseline[i], self.height[i] = p[0], p[1]
            self.positions[i, :] = p[2:4]
            self.sigma[i] = p[4]
            self.errors[i, :] = e
            self.r_squared[i] = r2
            self.valid[i] = _fit_is_valid(p, e, r2, params)

        num_success = int(np.sum(self.valid))
        self.filter(self.valid)
        return num_success, num_total

    # Remove duplicate fits, keeping the best by R^2 or by x/y error
    def remove_nearest_neighbours(self, params, status=None):
        if self.num_spots < 2:
            return

        if params.suppression_key == "xy_error":
            ranking = np.argsort(np.hypot(self.errors[:, 2], self.errors[:, 3]), kind="stable")
        else:
            ranking = np.argsort(-self.r_squared, kind="stable")

        # Fitted spots stay unless a better fit claims them
        accepted = _suppress_neighbours(self.positions, ranking, params.minimum_distance, status,
                                        keep_unvisited=True)
        self.valid = np.zeros(self.num_spots, dtype=bool)
        self.valid[accepted] = True
        self.filter(self.valid)

    # Background corrected intensity for all spots
    def get_spot_intensities(self, frame: np.ndarray, params, offset_cache, region=None):
        if self.num_spots == 0:
            return
        if region is None:
            region = (0, 0, frame.shape[1], frame.shape[0])

        inner_offsets, outer_offsets = offset_cache.offsets(params.inner_radius, params.outer_radius)
        raw_intensity = np.zeros(self.num_spots)
        for i in range(self.num_spots):
            self.intensity[i], self.median_background[i], raw_intensity[i] = \
                _calculate_single_spot_intensity_worker(self.positions[i], frame, region,
                                                        inner_offsets, outer_offsets)

        self.set_property("uncorrected_intensity", raw_intensity)

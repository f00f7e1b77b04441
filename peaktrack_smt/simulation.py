#! /usr/bin/env python3
# -*- coding: utf-8 -*-
# vim:fenc=utf-8
#
# Copyright © 2020 Edward Higgins <ed.higgins@york.ac.uk>
#
# Distributed under terms of the MIT license.

""" SIMULATION - Dataset simulation module

Description:
    simulation.py generates pseudo-experimental stacks of Gaussian spots on a
    flat background, either diffusing at random or moving along a straight
    line, together with the ground truth positions used to build them.

Contains:
    function render_frame
    function simulate
    function simulate_linear

Version: 0.3.0
"""

# --- Core library imports ---
import sys
import numpy as np

# --- Local module imports ---
from . import algorithms
from .images import ImageData
from .spots import Spots


# Noiseless frame of Gaussian spots on a flat background
def render_frame(frame_size, positions, height, width, baseline=0.0):
    x_pos, y_pos = np.meshgrid(np.arange(frame_size[0]), np.arange(frame_size[1]))
    frame_data = np.full([frame_size[1], frame_size[0]], float(baseline))
    for x, y in np.asarray(positions, dtype=np.float64).reshape(-1, 2):
        frame_data += algorithms.gaussian_formula(x_pos, y_pos, [0.0, height, x, y, width])
    return frame_data


def _add_noise(frame_data, params, rng):
    if params.bg_std > 0:
        frame_data = frame_data + rng.normal(0.0, params.bg_std, frame_data.shape)
    return frame_data


# Ground truth Spots object for one frame
def _real_spots(positions, frame, params):
    real = Spots(len(positions), frame=frame, channel=params.channel)
    real.positions[:, :] = positions
    real.height[:] = params.spot_height
    real.sigma[:] = params.spot_width
    real.baseline[:] = params.bg_mean
    real.track_id = [str(i) for i in range(len(positions))]
    return real


# --- Main function to simulate image data and spot positions ---
def simulate(params):
    """ Randomly placed spots diffusing from frame to frame

    Returns (image, real_spots) where real_spots holds one ground truth Spots
    object per frame, with track_id set to the index of the simulated spot.
    """
    if params.num_frames < 1:
        sys.exit("ERROR: Cannot simulate image with num_frames < 1")

    rng = np.random.default_rng(params.seed)

    # Diffusion step size in pixels
    S = np.sqrt(2 * params.diffusion_coeff * params.frame_time) / params.pixel_size

    # Random start positions, away from the frame edges
    margin = 2 * params.spot_width
    positions = np.column_stack([
        rng.uniform(margin, params.frame_size[0] - margin, params.num_spots),
        rng.uniform(margin, params.frame_size[1] - margin, params.num_spots),
    ])

    image = ImageData()
    image.initialise(params.num_frames, params.frame_size)
    real_spots = []
    for frame in range(params.num_frames):
        if frame > 0:
            positions = rng.normal(positions, S)
        real_spots.append(_real_spots(positions, frame, params))

        frame_data = render_frame(params.frame_size, positions, params.spot_height,
                                  params.spot_width, params.bg_mean)
        image[frame] = _add_noise(frame_data, params, rng)

    return image, real_spots


def simulate_linear(params, start, end):
    """ A single spot moving at constant speed from start to end

    Returns (image, path) with path the [num_frames, 2] planted positions.
    """
    if params.num_frames < 1:
        sys.exit("ERROR: Cannot simulate image with num_frames < 1")

    rng = np.random.default_rng(params.seed)
    path = np.linspace(np.asarray(start, dtype=np.float64), np.asarray(end, dtype=np.float64),
                       params.num_frames)

    image = ImageData()
    image.initialise(params.num_frames, params.frame_size)
    for frame in range(params.num_frames):
        frame_data = render_frame(params.frame_size, path[frame], params.spot_height,
                                  params.spot_width, params.bg_mean)
        image[frame] = _add_noise(frame_data, params, rng)

    return image, path

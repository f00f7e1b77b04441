#! /usr/bin/env python3
# -*- coding: utf-8 -*-
# vim:fenc=utf-8
#
# Copyright © 2020 Edward Higgins <ed.higgins@york.ac.uk>
#
# Distributed under terms of the MIT license.

""" PARAMETERS - Program parameters module

Description:
    parameters.py contains the default values for every parameter used in the
    detection, fitting, integration and tracking stages, along with the
    Parameters class that carries them around the code as a single object.

Contains:
    dict     default_parameters
    class    Parameters

Version: 0.3.0
"""

# --- Core library imports ---
import sys
import multiprocessing as mp
import numpy as np

# --- Default values, grouped by the stage that uses them ---
default_parameters = {
    # General
    "verbose": {
        "description": "Print progress and fit summaries",
        "class": "general",
        "default": False,
    },
    "num_procs": {
        "description": "Number of worker threads (<= 1 runs serially)",
        "class": "general",
        "default": mp.cpu_count(),
    },
    "channel": {
        "description": "Channel index recorded on every peak",
        "class": "general",
        "default": 0,
    },
    "region": {
        "description": "Analysis rectangle (x0, y0, width, height), None for full frame",
        "class": "general",
        "default": None,
    },

    # Peak detection
    "threshold": {
        "description": "Pixel value a candidate must exceed",
        "class": "detection",
        "default": 50.0,
    },
    "minimum_distance": {
        "description": "Minimum separation between accepted peaks (pixels)",
        "class": "detection",
        "default": 4,
    },
    "find_negative_peaks": {
        "description": "Look for dips below -threshold instead of peaks",
        "class": "detection",
        "default": False,
    },
    "use_dog_filter": {
        "description": "Detect on a Difference of Gaussians filtered frame",
        "class": "detection",
        "default": False,
    },
    "dog_filter_radius": {
        "description": "Feature radius used to size the DoG filter (pixels)",
        "class": "detection",
        "default": 2.0,
    },

    # Gaussian fitting
    "fit_peaks": {
        "description": "Refine candidate positions with a 2D Gaussian fit",
        "class": "fitting",
        "default": True,
    },
    "fit_radius": {
        "description": "Half width of the square fit window (pixels)",
        "class": "fitting",
        "default": 4,
    },
    "psf_width": {
        "description": "Starting Gaussian sigma for the fit (pixels)",
        "class": "fitting",
        "default": 1.0,
    },
    "vary": {
        "description": "Which of [baseline, height, x, y, sigma] are free",
        "class": "fitting",
        "default": [True, True, True, True, True],
    },
    "max_error_filter": {
        "description": "Reject fits whose parameter errors exceed max_error",
        "class": "fitting",
        "default": False,
    },
    "max_error": {
        "description": "Error bounds for [baseline, height, x, y, sigma]",
        "class": "fitting",
        "default": [5000.0, 5000.0, 1.0, 1.0, 1.0],
    },
    "min_r_squared": {
        "description": "Fits with R^2 at or below this are rejected (None to skip)",
        "class": "fitting",
        "default": 0.0,
    },
    "fit_region_threshold": {
        "description": "Only fit window pixels beyond this value (None for full window)",
        "class": "fitting",
        "default": None,
    },
    "lm_precision": {
        "description": "Sum of squares improvement that ends the fit",
        "class": "fitting",
        "default": 1e-6,
    },
    "lm_max_iterations": {
        "description": "Maximum Levenberg-Marquardt iterations",
        "class": "fitting",
        "default": 50,
    },
    "suppression_key": {
        "description": "Ranking after fitting: 'r_squared' or 'xy_error'",
        "class": "fitting",
        "default": "r_squared",
    },

    # Intensity integration
    "integrate": {
        "description": "Integrate background corrected peak intensities",
        "class": "integration",
        "default": True,
    },
    "inner_radius": {
        "description": "Radius of the integrated disc (pixels)",
        "class": "integration",
        "default": 1,
    },
    "outer_radius": {
        "description": "Outer radius of the background annulus (pixels)",
        "class": "integration",
        "default": 3,
    },

    # Tracking
    "max_difference": {
        "description": "Allowed change in [baseline, height, x, y, sigma, frame gap]",
        "class": "tracking",
        "default": [np.nan, np.nan, 1.0, 1.0, np.nan, 1],
    },
    "check_max_difference": {
        "description": "Enable the [baseline, height, sigma] change checks",
        "class": "tracking",
        "default": [False, False, False],
    },
    "min_trajectory_length": {
        "description": "Shortest trajectory kept (peaks)",
        "class": "tracking",
        "default": 100,
    },
    "pixel_size": {
        "description": "Scale applied to trajectory positions",
        "class": "tracking",
        "default": 1.0,
    },
    "verbose_columns": {
        "description": "Add baseline, height, sigma and R2 columns to trajectories",
        "class": "tracking",
        "default": False,
    },

    # Simulation
    "num_frames": {
        "description": "Number of frames to simulate",
        "class": "simulation",
        "default": 10,
    },
    "frame_size": {
        "description": "Simulated frame size (width, height)",
        "class": "simulation",
        "default": (64, 64),
    },
    "num_spots": {
        "description": "Number of simulated spots",
        "class": "simulation",
        "default": 5,
    },
    "spot_height": {
        "description": "Peak height of simulated spots",
        "class": "simulation",
        "default": 200.0,
    },
    "spot_width": {
        "description": "Sigma of simulated spots (pixels)",
        "class": "simulation",
        "default": 1.5,
    },
    "bg_mean": {
        "description": "Simulated background level",
        "class": "simulation",
        "default": 10.0,
    },
    "bg_std": {
        "description": "Simulated background noise",
        "class": "simulation",
        "default": 0.0,
    },
    "diffusion_coeff": {
        "description": "Diffusion coefficient of simulated spots (pixel units)",
        "class": "simulation",
        "default": 0.5,
    },
    "frame_time": {
        "description": "Time between frames",
        "class": "simulation",
        "default": 1.0,
    },
    "seed": {
        "description": "Random seed for simulation (None for fresh entropy)",
        "class": "simulation",
        "default": None,
    },
}


class Parameters:
    """ Holds every program parameter as an attribute

    Values start from default_parameters and can be overridden by keyword,
    e.g. Parameters(threshold=30, min_trajectory_length=3).
    """
    def __init__(self, **kwargs):
        # Copy the defaults so list values are never shared between objects
        for name, entry in default_parameters.items():
            default = entry["default"]
            if isinstance(default, list):
                default = list(default)
            setattr(self, name, default)

        for name, value in kwargs.items():
            if name not in default_parameters:
                sys.exit(f"ERROR: Unrecognised parameter '{name}'")
            setattr(self, name, value)

        self.validate()

    def __repr__(self):
        values = ", ".join(f"{name}={getattr(self, name)!r}" for name in default_parameters)
        return f"Parameters({values})"

    def update(self, **kwargs):
        for name, value in kwargs.items():
            if name not in default_parameters:
                sys.exit(f"ERROR: Unrecognised parameter '{name}'")
            setattr(self, name, value)
        self.validate()
        return self

    def validate(self):
        # --- Detection ---
        if not np.isfinite(self.threshold):
            sys.exit("ERROR: threshold must be finite")
        if self.minimum_distance < 0:
            sys.exit("ERROR: minimum_distance must be >= 0")
        if self.use_dog_filter and self.dog_filter_radius <= 0:
            sys.exit("ERROR: dog_filter_radius must be > 0")
        if self.region is not None:
            if len(self.region) != 4 or self.region[2] < 1 or self.region[3] < 1:
                sys.exit(f"ERROR: region must be (x0, y0, width, height), got {self.region}")

        # --- Fitting ---
        if self.fit_radius < 1:
            sys.exit("ERROR: fit_radius must be >= 1")
        if self.psf_width <= 0:
            sys.exit("ERROR: psf_width must be > 0")
        if len(self.vary) != 5:
            sys.exit("ERROR: vary needs one flag per Gaussian parameter (5)")
        if len(self.max_error) != 5:
            sys.exit("ERROR: max_error needs one bound per Gaussian parameter (5)")
        if self.lm_max_iterations < 1 or self.lm_precision <= 0:
            sys.exit("ERROR: lm_max_iterations and lm_precision must be positive")
        if self.suppression_key not in ("r_squared", "xy_error"):
            sys.exit(f"ERROR: Unknown suppression_key '{self.suppression_key}'")

        # --- Integration ---
        if self.inner_radius < 0:
            sys.exit("ERROR: inner_radius must be >= 0")
        if self.outer_radius <= self.inner_radius:
            sys.exit(f"ERROR: outer_radius ({self.outer_radius}) must be larger than inner_radius ({self.inner_radius})")

        # --- Tracking ---
        if len(self.max_difference) != 6:
            sys.exit("ERROR: max_difference needs [baseline, height, x, y, sigma, frame gap]")
        if len(self.check_max_difference) != 3:
            sys.exit("ERROR: check_max_difference needs [baseline, height, sigma] flags")
        if not (self.max_difference[2] > 0 and self.max_difference[3] > 0):
            sys.exit("ERROR: max_difference x and y must be > 0")
        if int(self.max_difference[5]) < 1:
            sys.exit("ERROR: max_difference frame gap must be >= 1")
        for check, index, name in zip(self.check_max_difference, (0, 1, 4), ("baseline", "height", "sigma")):
            if check and not np.isfinite(self.max_difference[index]):
                sys.exit(f"ERROR: {name} check enabled without a finite max_difference")
        if self.min_trajectory_length < 0:
            sys.exit("ERROR: min_trajectory_length must be >= 0")
        if self.pixel_size <= 0:
            sys.exit("ERROR: pixel_size must be > 0")

        if self.num_procs < 1:
            sys.exit("ERROR: num_procs must be >= 1")

    @property
    def max_frame_gap(self):
        return int(self.max_difference[5])

    @property
    def search_radius(self):
        return max(self.max_difference[2], self.max_difference[3])

#! /usr/bin/env python3
# -*- coding: utf-8 -*-
# vim:fenc=utf-8
#
# Copyright © 2020 Edward Higgins <ed.higgins@york.ac.uk>
#
# Distributed under terms of the MIT license.

""" IMAGES - Image access and manipulation module

Description:
    images.py contains the ImageData class for storing datasets of multiple
    frames, along with the mirrored pixel access used wherever a window or
    integration mask runs off the edge of the analysis region.

Contains:
    class    ImageData
    function mirror_index
    function mirror_pixels
    function mirror_window

Version: 0.3.0
"""

# --- Core library imports ---
import sys
import os
import numpy as np
import tifffile


# --- Mirrored access beyond the analysis region ---
def mirror_index(index, start, size):
    # Reflect indices back into [start, start + size), repeating the edge
    # pixel, for any distance outside the range
    period = 2 * size
    offset = np.mod(np.asarray(index) - start, period)
    offset = np.where(offset >= size, period - 1 - offset, offset)
    return offset + start


def mirror_pixels(image, region, xs, ys):
    """ Pixel values at integer coordinates (xs, ys), mirrored into region

    image is a 2D [height, width] array and region an (x0, y0, width, height)
    rectangle inside it.
    """
    x0, y0, width, height = region
    xs = mirror_index(xs, x0, width)
    ys = mirror_index(ys, y0, height)
    return image[ys, xs]


def mirror_window(image, region, x_start, y_start, width, height):
    # Rectangular block of pixels starting at (x_start, y_start)
    xs = mirror_index(np.arange(x_start, x_start + width), region[0], region[2])
    ys = mirror_index(np.arange(y_start, y_start + height), region[1], region[3])
    return image[np.ix_(ys, xs)]


# --- Class definition for managing image sequence data ---
class ImageData:
    # Initialise empty ImageData object
    def __init__(self):
        self.num_frames = -1
        self.pixel_data = None
        self.region = None
        self.exists = False # Flag indicating if data is loaded

    # Access a single frame as its own ImageData (e.g., image_data[0])
    def __getitem__(self, index):
        frame = ImageData()
        frame.set_pixel_data(self.pixel_data[index:index + 1, :, :])
        frame.region = self.region
        return frame

    # Set a single frame from another ImageData or a 2D array
    def __setitem__(self, index, value):
        if isinstance(value, ImageData):
            self.pixel_data[index, :, :] = value.pixel_data[0, :, :]
        else:
            self.pixel_data[index, :, :] = value

    def __len__(self):
        return max(self.num_frames, 0)

    # Initialise an empty stack of a given size
    def initialise(self, num_frames, frame_size, dtype=np.float64):
        pixel_data = np.zeros([num_frames, frame_size[1], frame_size[0]], dtype=dtype) # H, W order
        self.set_pixel_data(pixel_data)

    # Take ownership of a [frames, height, width] (or single [height, width]) array
    def set_pixel_data(self, pixel_data):
        pixel_data = np.asarray(pixel_data)
        if pixel_data.ndim == 2:
            pixel_data = pixel_data[np.newaxis, :, :]
        if pixel_data.ndim != 3:
            sys.exit(f"ERROR: Expected a 2D frame or 3D stack, got {pixel_data.ndim} dimensions")

        self.pixel_data = pixel_data
        self.num_frames = pixel_data.shape[0]
        self.frame_size = (pixel_data.shape[2], pixel_data.shape[1]) # W, H
        self.exists = True

    # Restrict analysis to a rectangle, None for the whole frame
    def set_region(self, region):
        if region is None:
            self.region = None
            return

        x0, y0, width, height = (int(v) for v in region)
        if x0 < 0 or y0 < 0 or x0 + width > self.frame_size[0] or y0 + height > self.frame_size[1]:
            sys.exit(f"ERROR: Region {region} lies outside the {self.frame_size} frame")
        self.region = (x0, y0, width, height)

    # Bounding rectangle (x0, y0, width, height) of the analysed area
    def bounds(self):
        if self.region is not None:
            return self.region
        return (0, 0, self.frame_size[0], self.frame_size[1])

    # Numeric sample conversions
    @staticmethod
    def to_f64(values):
        return np.asarray(values, dtype=np.float64)

    @staticmethod
    def from_f64(values, dtype):
        values = np.asarray(values, dtype=np.float64)
        if np.issubdtype(dtype, np.integer):
            info = np.iinfo(dtype)
            values = np.clip(np.rint(values), info.min, info.max)
        return values.astype(dtype)

    # Return pixel data as float64 NumPy array(s)
    def as_image(self, frame=0, drop_dim=True):
        if drop_dim:
            return self.to_f64(self.pixel_data[frame, :, :])
        return self.to_f64(self.pixel_data)

    # Single pixel, mirrored into the analysis region when out of bounds
    def get(self, x, y, t=0):
        return float(mirror_pixels(self.pixel_data[t], self.bounds(), int(x), int(y)))

    # Read image data (TIFF) from file
    def read(self, filename, params):
        if not os.path.isfile(filename):
            sys.exit(f"Unable to find file matching '{filename}'")

        self.set_pixel_data(tifffile.imread(filename))
        self.set_region(params.region)

    # Write image data to a TIFF file, keeping the stored sample type
    def write(self, filename):
        tifffile.imwrite(filename, self.pixel_data)

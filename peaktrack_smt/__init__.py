#! /usr/bin/env python3
# -*- coding: utf-8 -*-
# vim:fenc=utf-8
#
# Copyright © 2020 Edward Higgins <ed.higgins@york.ac.uk>
#
# Distributed under terms of the MIT license.

""" PEAKTRACK-SMT - Single molecule peak finding, fitting and tracking

Description:
    Finds point-like peaks in every frame of an image stack, refines them with
    a 2D Gaussian fit, integrates their background corrected intensity and
    links them into trajectories.

Version: 0.3.0
"""

__version__ = "0.3.0"

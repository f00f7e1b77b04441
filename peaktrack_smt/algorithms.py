#! /usr/bin/env python3
# -*- coding: utf-8 -*-
# vim:fenc=utf-8
#
# Copyright © 2020 Edward Higgins <ed.higgins@york.ac.uk>
#
# Distributed under terms of the MIT license.

""" ALGORITHMS - Low level algorithms module

Description:
    algorithms.py contains the numerical routines used throughout the code
    that don't need any of the data structures defined in other modules: the
    symmetric 2D Gaussian model, a Levenberg-Marquardt least squares solver
    built on Gauss-Jordan elimination, goodness of fit, initial guesses and the
    Difference of Gaussians filter used ahead of peak detection.

    The solver kernels are compiled with numba in nogil mode so that fits on
    different frames run side by side in a thread pool.

Contains:
    function gaussian_formula
    function gauss_jordan
    function levenberg_marquardt
    function fit_gaussian
    function initial_guess
    function r_squared
    function dog_filter

Version: 0.3.0
"""

import math

import cv2
import numpy as np
from numba import jit

# Parameter order used by every fit: [baseline, height, x0, y0, sigma]
NUM_PARAMS = 5


# --- Gaussian model ---
def gaussian_formula(x, y, p):
    # Vectorised model value, used for R^2 and for simulated spots
    dist_sq = (x - p[2])**2 + (y - p[3])**2
    return p[0] + p[1] * np.exp(-dist_sq / (2 * p[4]**2))


@jit(nopython=True, nogil=True, error_model="numpy")
def _gaussian_and_gradient(x, y, p, dyda):
    # Model value at (x, y), with the partial derivatives written to dyda
    dx = x - p[2]
    dy = y - p[3]
    dist_sq = dx * dx + dy * dy
    sigma_sq = p[4] * p[4]

    dyda[0] = 1.0
    dyda[1] = math.exp(-dist_sq / (2.0 * sigma_sq))
    scaled = p[1] * dyda[1]
    dyda[2] = scaled * dx / sigma_sq
    dyda[3] = scaled * dy / sigma_sq
    dyda[4] = scaled * dist_sq / (sigma_sq * p[4])

    return p[0] + scaled


# --- Linear algebra ---
@jit(nopython=True, nogil=True, error_model="numpy")
def gauss_jordan(left, right):
    """ Solve left @ X = right in place with partial pivoting

    On return right holds X and left has been reduced to the identity. A
    singular system leaves inf/nan in right rather than raising.
    """
    n = left.shape[0]
    m = right.shape[1]

    for i in range(n):
        # Partial pivoting on column i
        pivot = i
        for j in range(i + 1, n):
            if abs(left[j, i]) > abs(left[pivot, i]):
                pivot = j
        if pivot != i:
            for k in range(n):
                tmp = left[i, k]
                left[i, k] = left[pivot, k]
                left[pivot, k] = tmp
            for k in range(m):
                tmp = right[i, k]
                right[i, k] = right[pivot, k]
                right[pivot, k] = tmp

        # Eliminate column i from every other row
        for j in range(n):
            if j != i:
                factor = left[j, i] / left[i, i]
                left[j, i] = 0.0
                for k in range(i + 1, n):
                    left[j, k] -= factor * left[i, k]
                for k in range(m):
                    right[j, k] -= factor * right[i, k]

    # Normalise the diagonal
    for i in range(n):
        diag = left[i, i]
        for k in range(m):
            right[i, k] /= diag
        left[i, i] = 1.0


# --- Levenberg-Marquardt ---
@jit(nopython=True, nogil=True, error_model="numpy")
def _normal_equations(xs, ys, p, varying, alpha, beta, dyda):
    # Fill alpha (J^T J) and beta (J^T r) over the varying parameters only
    # and return the sum of squared residuals
    n_vary = varying.shape[0]
    for j in range(n_vary):
        beta[j, 0] = 0.0
        for k in range(n_vary):
            alpha[j, k] = 0.0

    error = 0.0
    for i in range(ys.shape[0]):
        residual = ys[i] - _gaussian_and_gradient(xs[i, 0], xs[i, 1], p, dyda)
        error += residual * residual
        for j in range(n_vary):
            d_j = dyda[varying[j]]
            for k in range(j + 1):
                alpha[j, k] += d_j * dyda[varying[k]]
            beta[j, 0] += d_j * residual

    # Symmetric half
    for j in range(n_vary):
        for k in range(j + 1, n_vary):
            alpha[j, k] = alpha[k, j]

    return error


@jit(nopython=True, nogil=True, error_model="numpy")
def levenberg_marquardt(xs, ys, p, varying, e, lam, factor, precision, max_iterations):
    """ Minimise the Gaussian model residuals over (xs, ys) in place

    xs is [n, 2] pixel coordinates, ys the n pixel values, p the starting
    parameters (updated on return), varying the indices of free parameters and
    e receives their standard errors. Returns (sum of squares, iterations).
    """
    n = ys.shape[0]
    n_vary = varying.shape[0]

    alpha = np.zeros((n_vary, n_vary))
    beta = np.zeros((n_vary, 1))
    trial_alpha = np.zeros((n_vary, n_vary))
    trial_beta = np.zeros((n_vary, 1))
    dyda = np.zeros(p.shape[0])
    trial = p.copy()

    error = _normal_equations(xs, ys, p, varying, alpha, beta, dyda)

    iteration = 0
    while iteration < max_iterations:
        iteration += 1

        # Damped step
        for i in range(n_vary):
            alpha[i, i] *= 1.0 + lam
        gauss_jordan(alpha, beta)

        for i in range(p.shape[0]):
            trial[i] = p[i]
        for j in range(n_vary):
            trial[varying[j]] += beta[j, 0]

        trial_error = _normal_equations(xs, ys, trial, varying, trial_alpha, trial_beta, dyda)

        if trial_error < error:
            # Accept, keep the normal equations already built at the new point
            improvement = error - trial_error
            for i in range(p.shape[0]):
                p[i] = trial[i]
            alpha, trial_alpha = trial_alpha, alpha
            beta, trial_beta = trial_beta, beta
            error = trial_error
            lam /= factor
            if improvement < precision:
                break
        else:
            # Reject, rebuild at the unchanged point with more damping
            lam *= factor
            error = _normal_equations(xs, ys, p, varying, alpha, beta, dyda)

    # Standard errors from the inverted (undamped) normal equations
    covar = np.eye(n_vary)
    gauss_jordan(alpha, covar)
    dof = n - n_vary
    for j in range(n_vary):
        e[varying[j]] = np.sqrt(covar[j, j] * error / dof)

    return error, iteration


def fit_gaussian(xs, ys, p, vary=None, precision=1e-6, max_iterations=50, lam=0.001, factor=10.0):
    """ Fit the symmetric Gaussian model to a set of pixels

    Args:
        xs: [n, 2] array of pixel (x, y) coordinates
        ys: n pixel values
        p: starting [baseline, height, x0, y0, sigma], copied not modified
        vary: 5 booleans selecting the free parameters (all by default)

    Returns:
        (p, e, chi_sq, iterations) with the fitted parameters and their errors
    """
    xs = np.ascontiguousarray(xs, dtype=np.float64).reshape(-1, 2)
    ys = np.ascontiguousarray(ys, dtype=np.float64).ravel()
    p = np.array(p, dtype=np.float64)
    if vary is None:
        vary = [True] * NUM_PARAMS
    varying = np.flatnonzero(np.asarray(vary, dtype=bool)).astype(np.int64)
    e = np.zeros(NUM_PARAMS)

    chi_sq, iterations = levenberg_marquardt(xs, ys, p, varying, e, float(lam), float(factor),
                                             float(precision), int(max_iterations))
    return p, e, chi_sq, iterations


# --- Fit set-up and quality ---
def initial_guess(xs, ys, p, find_negative=False, centre_value=None, psf_width=1.0):
    """ Fill the NaN entries of p from the pixels being fitted

    baseline is the window minimum and height the max - min range (roles swap
    for negative peaks), x0/y0 the brightest (dimmest) pixel. When x0 and y0
    are already given, height is taken from centre_value, the pixel at
    (int x0, int y0), instead.
    """
    p = np.array(p, dtype=np.float64)
    i_max = int(np.argmax(ys))
    i_min = int(np.argmin(ys))
    if find_negative:
        i_max, i_min = i_min, i_max

    guess = np.array([ys[i_min], ys[i_max] - ys[i_min], xs[i_max, 0], xs[i_max, 1], psf_width])

    if not np.isnan(p[2]) and not np.isnan(p[3]) and centre_value is not None:
        p[0] = ys[i_min]
        p[1] = centre_value - p[0]

    missing = np.isnan(p)
    p[missing] = guess[missing]
    return p


def r_squared(xs, ys, p):
    # Coefficient of determination of the model over the given pixels
    model = gaussian_formula(xs[:, 0], xs[:, 1], p)
    ss_res = np.sum((ys - model)**2)
    ss_tot = np.sum((ys - np.mean(ys))**2)
    if ss_tot == 0:
        return np.nan
    return 1.0 - ss_res / ss_tot


# --- Image filtering ---
def dog_filter(image, radius):
    # Difference of Gaussians tuned to features of the given radius
    sigma1 = radius / np.sqrt(2) * 0.9
    sigma2 = radius / np.sqrt(2) * 1.1
    image = np.asarray(image, dtype=np.float32)
    narrow = cv2.GaussianBlur(image, (0, 0), sigmaX=sigma1, borderType=cv2.BORDER_REFLECT)
    wide = cv2.GaussianBlur(image, (0, 0), sigmaX=sigma2, borderType=cv2.BORDER_REFLECT)
    return (narrow - wide).astype(np.float64)

#! /usr/bin/env python3
# -*- coding: utf-8 -*-
# vim:fenc=utf-8
#
# Copyright © 2020 Edward Higgins <ed.higgins@york.ac.uk>
#
# Distributed under terms of the MIT license.

""" STATUS - Run status module

Description:
    status.py contains the TrackingStatus class, shared between the caller and
    the worker threads of a run. It carries the cooperative cancel flag and a
    completed-frame counter that a reporting thread can poll.

Contains:
    class    TrackingStatus
    function is_cancelled

Version: 0.3.0
"""

import threading


class TrackingStatus:
    def __init__(self):
        self._cancel = threading.Event()
        self._lock = threading.Lock()
        self._frames_done = 0

    # Ask every running loop to stop at its next check
    def cancel(self):
        self._cancel.set()

    @property
    def cancelled(self):
        return self._cancel.is_set()

    # Called once per finished frame, never decreases
    def frame_done(self):
        with self._lock:
            self._frames_done += 1
            return self._frames_done

    @property
    def frames_done(self):
        with self._lock:
            return self._frames_done


def is_cancelled(status):
    # Runs without a status object are never cancelled
    return status is not None and status.cancelled

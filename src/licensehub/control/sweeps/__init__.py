"""Periodic sweeps."""

from licensehub.control.sweeps.auto_shutdown import AutoShutdownSweep
from licensehub.control.sweeps.base import SweepBase
from licensehub.control.sweeps.metrics import MetricsSweep
from licensehub.control.sweeps.session_prep import SessionPrepSweep

__all__ = ["AutoShutdownSweep", "MetricsSweep", "SessionPrepSweep", "SweepBase"]

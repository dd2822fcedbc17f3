"""Drone runner that schedules pipeline stages as Nomad batch jobs."""

__version__ = "1.0.0"

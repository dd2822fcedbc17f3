"""Clients for the Drone server and the Nomad cluster."""

from drone_runner_nomad.client.base import CoordinationClient, SchedulerClient
from drone_runner_nomad.client.drone import DroneClient, DroneClientError, OptimisticLockError
from drone_runner_nomad.client.nomad import NomadClient, NomadClientError

__all__ = [
    "CoordinationClient",
    "DroneClient",
    "DroneClientError",
    "NomadClient",
    "NomadClientError",
    "OptimisticLockError",
    "SchedulerClient",
]

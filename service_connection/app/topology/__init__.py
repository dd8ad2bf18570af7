"""Broker topology management for the Connection Service."""

from .provisioner import (
    TopologyError,
    TopologyProvisioner,
    dispatcher_queue_name,
    inputs_queue_name,
    outputs_queue_name,
)

__all__ = [
    "TopologyError",
    "TopologyProvisioner",
    "dispatcher_queue_name",
    "inputs_queue_name",
    "outputs_queue_name",
]

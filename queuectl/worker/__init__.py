"""
Worker module.
Contains the worker loop, command executor and pool supervisor.
"""

from queuectl.worker.main import Worker
from queuectl.worker.supervisor import Supervisor, run_workers

__all__ = ["Worker", "Supervisor", "run_workers"]

"""
Reaper module.
Contains the claim reaper for recovering jobs from crashed workers.
"""

from queuectl.reaper.main import Reaper

__all__ = ["Reaper"]

"""Crowd-voted game control.

Chat votes are normalized into control commands, tallied over a timed window
and the winning command is dispatched to the emulator. Window timing, weights
and tie-breaks live in the domain layer; transports only move data in and out.
"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.1.0"

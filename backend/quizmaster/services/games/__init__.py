"""Game domain services: round resolution, timers and event fan-out.

This package contains the game mechanics that HTTP routes and socket
handlers call into, keeping transport concerns separated from the
state machine and its locking discipline.
"""

"""Rivestack HA PostgreSQL provider.

Drives the asynchronous Rivestack job model (provisioning, scaling and
configuration jobs) into a synchronous create/read/update/delete contract
suitable for declarative infrastructure tooling.
"""

__version__ = "0.1.0"

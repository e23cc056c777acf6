"""
Proxy Package
=============

Downstream handlers invoked by the gateway once a request is authorized.

Main Components:
----------------
- forward.py: ReverseForwarder streaming requests to the upstream service
- info.py: JSON description of the request and session (debug path, or
  downstream when no upstream is configured)
"""

from .forward import ReverseForwarder
from .info import render_info

__all__ = ["ReverseForwarder", "render_info"]

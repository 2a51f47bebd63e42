"""
Hearth: per-tenant agent sandbox orchestration and control plane.
"""

__version__ = "0.1.0"

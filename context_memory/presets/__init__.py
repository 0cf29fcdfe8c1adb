"""Presets: ready-to-use config templates for common deployments."""

from .base import get_preset, list_presets  # noqa: F401

# Import presets to trigger registration
from . import development  # noqa: F401
from . import general  # noqa: F401
from . import production  # noqa: F401

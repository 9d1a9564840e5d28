"""tweakguard - reversible system configuration changes with backup and undo."""

from .core.config import VERSION

__version__ = VERSION

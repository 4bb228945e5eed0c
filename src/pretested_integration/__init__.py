"""
pretested-integration: integrate a topic branch only after its merged build passes.

Importing the package has no side effects: no config loading and no logging
initialization. The public surface is kept small; submodules are imported on
demand by callers.
"""

from __future__ import annotations

__version__ = "0.1.0"

__all__ = ["__version__"]

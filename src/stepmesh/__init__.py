"""stepmesh command-line package.

Exposes the ``stepmesh`` CLI for inspecting STEP files, tessellating them
into welded triangle meshes and simplifying saved meshes.
"""

from .logging_setup import CONFIGS, configure_for, configure_logging, error_context

__version__ = "0.1.0"
__all__ = ["CONFIGS", "configure_for", "configure_logging", "error_context"]

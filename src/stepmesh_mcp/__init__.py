"""stepmesh MCP server package.

Provides an MCP (Model Context Protocol) stdio server that tessellates STEP
files into triangle meshes held in a bounded session.
"""

from .server import main as server_main
from .tools import MeshSession

__version__ = "0.1.0"
__all__ = ["server_main", "MeshSession"]

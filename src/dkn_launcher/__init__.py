"""Dria compute node launcher.

Installs the compute node binary from GitHub releases, keeps it (and an
optional local Ollama server) running, and updates both the node and the
launcher itself while it runs.
"""

__version__ = "0.1.0"

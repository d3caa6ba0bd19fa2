"""rasd: signaling relay for paired remote-assistance sessions."""

__version__ = "0.1.0"

"""
moltkeeper - Boot-time keeper for a sandboxed agent gateway
============================================================

Restores persisted state from an object store, patches the gateway
configuration from the environment, reconciles model-provider credentials,
and keeps exactly one gateway process alive while backing state up in the
background.
"""

__version__ = "1.0.0"

__all__ = ["__version__"]

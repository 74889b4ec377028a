"""pyneets Python Package

Python library bridging a NEETS amplifier to remote clients.
"""

from pyneets.bridge import NeetsAmpBridge

__all__ = ["NeetsAmpBridge"]

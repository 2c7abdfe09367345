"""
Calendar Mirror: one-way calendar mirroring with ownership markers.
"""

__version__ = "0.1.0"

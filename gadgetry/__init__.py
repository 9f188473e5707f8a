"""
gadgetry: evolves gadget chains by executing candidates under CPU emulation and
scoring their execution traces.
"""

__version__ = "0.1.0"

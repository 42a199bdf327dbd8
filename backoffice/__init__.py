"""
Channel Back-Office - Multi-channel order, return and inventory reconciliation
"""
__version__ = "1.0.0"

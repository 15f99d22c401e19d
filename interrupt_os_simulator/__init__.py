"""
Interrupt-driven round-robin kernel simulator.
"""

__version__ = "0.1.0"

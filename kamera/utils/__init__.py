"""
Utility helpers shared across the relay and client modules.
"""

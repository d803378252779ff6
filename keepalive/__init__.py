"""
Keepalive - keeps a single worker process running around the clock.
"""

__version__ = "0.1.0"

"""
Activity stats bot
Per-user, per-day Discord activity aggregation with periodic write-back
"""

__version__ = '1.0.0'

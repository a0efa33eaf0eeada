"""
torrentwatch - search, stream and resume torrent video from the terminal.
"""

__version__ = "0.3.0"

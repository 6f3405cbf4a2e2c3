"""
clipbooth - video transformation pipeline for recording kiosks.

Turns a raw recorded clip plus a pre-rendered overlay into a short vertical
MP4 with a speed ramp and optional background music.
"""

__version__ = "1.0.0"

"""
SRT Sync - multi-channel SRT ingest supervisor with timecode sync checking.

Copyright: (c) 2026 B. Wynne
License: GPLv2 or later
"""

__version__ = "1.0.0"

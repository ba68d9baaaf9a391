"""
Storyreel

Staged AI media production: a finished script is turned into characters,
a storyboard, per-frame transition clips and one concatenated final video.
"""

__version__ = "1.0.0"

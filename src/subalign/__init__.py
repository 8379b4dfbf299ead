"""
SubAlign - Subtitle timing alignment engine.

Finds the offset between subtitle dialogue timing and the speech in a
video's audio track using local voice activity detection, cross-correlation
and cloud transcription, and optionally applies it.
"""

__version__ = "0.2.0";
__author__ = "SubAlign Project";
__license__ = "MIT";

"""Syntheme render service: apply named themes to uploaded media with ffmpeg."""

__version__ = "0.1.0"

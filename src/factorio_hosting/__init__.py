"""Factorio Hosting - single-instance Factorio server deployment on AWS."""

__version__ = "0.1.0"

"""Keyless remote development environments on EC2."""

__version__ = "0.1.0"

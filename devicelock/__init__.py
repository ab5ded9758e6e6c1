"""Filesystem-coordinated allocation of test devices across parallel test workers."""

__version__ = "0.1.0"

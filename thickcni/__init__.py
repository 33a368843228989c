"""Shim, unix-socket daemon server and configuration manager for a thick CNI meta-plugin."""

__version__ = "0.1.0"
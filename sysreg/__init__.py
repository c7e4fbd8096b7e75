"""Unattended boot regression testing of an operating system in a virtual machine."""

__version__ = "0.1.0"

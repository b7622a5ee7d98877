"""Cancellable task packages: control plane, stores and flow operators."""

__version__ = "0.1.0"

"""Keeps a kops cluster's instance groups converged with its state store."""

__version__ = "0.1.0"

"""Softmax multi-label negative log-likelihood loss."""

__version__ = "0.0.1"

"""Staged conversational agents that turn chat into a portfolio page specification."""

__version__ = "0.1.0"

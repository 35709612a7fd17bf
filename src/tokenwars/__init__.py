"""TokenWars - two-token prediction market competition engine."""

__version__ = "0.1.0"

"""keygate - single-use activation key dispenser."""

__version__ = "0.1.0"

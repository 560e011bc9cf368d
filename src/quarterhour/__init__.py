"""Position lifecycle manager for 15-minute up/down prediction markets."""

__version__ = "0.1.0"

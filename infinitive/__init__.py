"""Monitor and control a communicating HVAC system over its serial bus."""

__version__ = "0.1.0"
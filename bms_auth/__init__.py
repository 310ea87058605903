"""Ultra BMS session and token authority."""

__version__ = "1.0.0"

"""SimpleCal: appointment scheduling with slot resolution and reservation claims."""

__version__ = "0.1.0"

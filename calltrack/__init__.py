"""Call attribution service for dealerships."""

__version__ = "0.1.0"

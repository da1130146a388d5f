"""Building blocks for HTTP services: WSGI server, JWT auth, access logging, settings and schema helpers."""

__version__ = "0.1.0"
"""Contract templating, approval and e-signature core for a travel agency."""

__version__ = "0.1.0"

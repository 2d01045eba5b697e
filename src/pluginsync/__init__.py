"""pluginsync: plugin step registration export and reconciliation."""

__version__ = "0.3.0"

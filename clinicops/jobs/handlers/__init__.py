"""Job handlers grouped by domain."""

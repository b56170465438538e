"""Event and anomaly journal."""

"""Pipeline services: persistence, upload, reconciliation and telemetry."""

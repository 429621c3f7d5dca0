"""Service layer for the provider monitor: config, scheduling, runtime and status API."""

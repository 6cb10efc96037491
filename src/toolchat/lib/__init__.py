"""Ambient support code: configuration, errors, logging, telemetry and metrics."""

"""Shared infrastructure: configuration, logging, telemetry and text helpers."""

"""Configuration and logging infrastructure."""

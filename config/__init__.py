"""Configuration — YAML settings with environment variable substitution."""

"""Configuration and identity helpers."""

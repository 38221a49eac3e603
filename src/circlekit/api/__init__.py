"""HTTP API for circlekit."""

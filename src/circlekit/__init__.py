"""circlekit: membership and feed consistency layer for community social apps."""

__version__ = "0.1.0"

"""Linux host metrics read from /proc and /sys, rendered in the Prometheus text format."""

__version__ = "0.1.0"
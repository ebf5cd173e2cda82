"""Supervisor for a small fleet of CLI agents driven through a plan/code/audit/push loop."""

__version__ = "0.3.0"

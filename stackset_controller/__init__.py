"""Traffic-aware prescaling and stack lifecycle controller for StackSets."""

__version__ = "0.1.0"

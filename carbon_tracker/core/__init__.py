"""
Core modules for Carbon Tracker.

This package contains usage log parsing, project identification,
carbon estimation and session accounting.
"""

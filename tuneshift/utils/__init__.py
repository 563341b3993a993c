"""Shared helpers: category logging, cancelable timers, token scrubbing."""

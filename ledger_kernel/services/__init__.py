"""Kernel services: flush-only writers used inside a caller-owned transaction."""

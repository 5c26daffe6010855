"""Core error taxonomy and shared primitives."""

"""Dependency resolution, execution and the scheduling loop."""

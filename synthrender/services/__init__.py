"""Core services of the render pipeline."""

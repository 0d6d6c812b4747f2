"""Boundary event models."""

"""Utility helpers for the harvester."""

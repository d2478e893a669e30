"""Utility helpers for SongForge."""

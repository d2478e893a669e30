"""Clients for the external services SongForge depends on."""

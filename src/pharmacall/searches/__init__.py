"""Medication searches (owned by the web app; read and status-updated here)."""

"""Vapi server-message webhooks."""

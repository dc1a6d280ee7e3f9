"""Operator surface: start/complete searches, job metrics, queue stats."""

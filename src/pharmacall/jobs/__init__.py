"""Pharmacy-call jobs, call records and per-pharmacy rate-limit markers."""

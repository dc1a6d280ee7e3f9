"""Dispatcher callback endpoints."""

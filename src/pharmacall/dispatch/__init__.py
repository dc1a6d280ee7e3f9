"""Delayed task dispatch (QStash or in-process) for job invocations."""

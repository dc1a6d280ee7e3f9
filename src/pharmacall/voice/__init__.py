"""Voice-call provider integration (Vapi) and call executors."""

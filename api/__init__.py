"""api/ -- FastAPI transport for the passkey ceremonies."""

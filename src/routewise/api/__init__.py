"""HTTP API for Routewise."""

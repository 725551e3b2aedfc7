"""HTTP API for Domain Router."""

"""Configuration, shared types and errors for the relay."""

"""Settings, logging, errors and shared types."""

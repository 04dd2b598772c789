"""End-to-end replay pipeline."""

"""Transaction replay and state diffing."""

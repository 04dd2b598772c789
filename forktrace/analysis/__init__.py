"""AI explanations of replay outcomes."""

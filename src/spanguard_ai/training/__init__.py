"""Training data collected from rated explanations."""

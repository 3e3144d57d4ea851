"""Direct (one-to-one) conversations."""

"""Chat rooms and room membership."""

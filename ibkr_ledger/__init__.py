"""Interactive Brokers activity import pipeline."""

"""Cost cascade kernel: persistence, precision, logging and shared types."""

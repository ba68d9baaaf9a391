"""Core utilities: constants, configuration, logging, errors and retry policy."""

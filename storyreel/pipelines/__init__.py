"""Stage machine, background work and generation job tracking."""

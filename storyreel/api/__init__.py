"""HTTP surface for the Storyreel pipeline."""

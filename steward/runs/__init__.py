"""Session runs: per-session serial lanes and the executor that performs a turn."""

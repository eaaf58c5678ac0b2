"""Fixed-window admission limiter keyed by identity, action and tier."""

"""Monthly provider cost counters with graduated degradation actions."""

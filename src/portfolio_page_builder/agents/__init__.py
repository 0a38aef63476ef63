"""Stage agents, one per conversation stage."""

"""Song generation orchestrator: fan-out, completion tracking and settlement."""

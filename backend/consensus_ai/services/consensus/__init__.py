"""Three-phase consensus pipeline."""

"""Domain services: estimation, metering, providers, the consensus pipeline and scheduling."""

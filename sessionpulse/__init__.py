"""Live activity status for agent sessions, inferred from their logs."""

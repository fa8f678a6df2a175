"""Live session core — presence, clocks, state store, reconciliation."""

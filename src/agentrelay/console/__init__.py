"""Interactive terminal client for a single relayed session."""

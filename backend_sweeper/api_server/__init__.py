"""HTTP API over the sweeper engine."""

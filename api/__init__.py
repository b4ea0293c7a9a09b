"""HTTP API for the auction mirror."""
